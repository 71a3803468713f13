"""Haven services.

- triage_engine: alert lifecycle, live sync, filters, stats and export
- alert_store: persistence and change feeds for crisis alerts
- audit_service: hash-chained platform audit log
"""
