"""Triage Engine HTTP handler - alert intake and responder endpoints.

Detectors post new alerts, responders submit lifecycle actions, and the
notification dispatcher reports sends. Live dashboards use ``subscribe``
directly; the list endpoint serves one-shot reads and exports.

All lifecycle actions are audit logged before the response is returned.
"""
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask import Flask, Response, jsonify, request

from haven.shared.database import ConnectionManager, DatabaseConfig, NotFoundError
from haven.shared.errors import PersistenceUnavailable, PreconditionFailed, ValidationFailed
from haven.shared.utils import configure_pii_salt_from_env, parse_iso, utc_now
from haven.services.alert_store import (
    AlertStore,
    InMemoryAlertStore,
    PostgresAlertStore,
    SubscriptionScope,
)
from haven.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    AuditRepository,
)
from .audit_trail import verify_trail
from .config import TriageConfig
from .delivery import DeliveryRecorder
from .events import AlertEventPublisher
from .export import export_csv
from .filters import AlertFilters, apply_filters
from .intake import AlertIntake
from .processor import ActionProcessor
from .state_machine import ActionRequest
from .stats import compute_stats, stats_as_of

logger = logging.getLogger(__name__)


@dataclass
class TriageComponents:
    """Wired collaborators behind the HTTP surface."""
    config: TriageConfig
    store: AlertStore
    audit_logger: AuditLogger
    processor: ActionProcessor
    intake: AlertIntake
    deliveries: DeliveryRecorder
    connection_manager: Optional[ConnectionManager] = None


def build_components(
    config: TriageConfig,
    connection_manager: Optional[ConnectionManager] = None,
) -> TriageComponents:
    """Wire store, audit and publisher for the configured backend."""
    if config.store_backend == "postgres":
        connection_manager = connection_manager or ConnectionManager(DatabaseConfig.load())
        connection_manager.initialize()
        store = PostgresAlertStore(connection_manager)
        store.ensure_schema()
        audit_repository = AuditRepository(connection_manager)
        audit_repository.ensure_schema()
    else:
        store = InMemoryAlertStore()
        audit_repository = AuditRepository()

    audit_logger = AuditLogger(audit_repository)
    publisher = AlertEventPublisher(
        stream_name=config.event_stream_name,
        enabled=config.event_publishing_enabled,
        region=config.aws_region,
    )

    logger.info(
        "TRIAGE_ENGINE_COMPONENTS_BUILT",
        extra={
            "store_backend": config.store_backend,
            "event_publishing_enabled": config.event_publishing_enabled,
        }
    )

    return TriageComponents(
        config=config,
        store=store,
        audit_logger=audit_logger,
        processor=ActionProcessor(store, audit_logger, publisher, config),
        intake=AlertIntake(store, audit_logger, publisher, config),
        deliveries=DeliveryRecorder(store, audit_logger, publisher),
        connection_manager=connection_manager,
    )


# Initialize Flask app
app = Flask(__name__)

configure_pii_salt_from_env()

components = build_components(TriageConfig.from_env())


def _tenant_id() -> str:
    return request.args.get("tenant_id") or components.config.default_tenant


def _scope() -> SubscriptionScope:
    return SubscriptionScope(
        responder_id=request.args.get("responder_id") or None,
        limit=components.config.subscription_limit,
    )


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "triage-engine",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check."""
    if components.connection_manager is not None:
        health_status = components.connection_manager.health_check()
        if not health_status["healthy"]:
            return jsonify({"status": "not_ready", "database": health_status}), 503
    return jsonify({"status": "ready"}), 200


@app.route("/alerts", methods=["POST"])
async def create_alert():
    """Create an alert from a detector submission.

    Request Body:
        {
            "tenant_id": "full-service",
            "person_id": "person_123",
            "person_name": "Alex Doe",
            "source": "ai_detection",
            "tier": 1,
            "trigger_terms": ["hopeless"],
            "payload": {"feature": "anchor", "llm_bypassed": true}
        }

    Response (201):
        The stored alert document
    """
    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"error": "Request body required"}), 400

        alert = await components.intake.submit(data)
        return jsonify(alert.to_document()), 201

    except ValidationFailed as e:
        return jsonify({"error": "validation_failed", "message": str(e)}), 400
    except PersistenceUnavailable as e:
        logger.error("ALERT_CREATE_UNAVAILABLE", extra={"error": str(e)})
        return jsonify({"error": "persistence_unavailable"}), 503
    except Exception as e:
        logger.error("ALERT_CREATE_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to create alert"}), 500


@app.route("/alerts", methods=["GET"])
async def list_alerts():
    """Filtered alert view plus statistics over the whole working set.

    Query Parameters:
        tenant_id, responder_id: Subscription scope
        source, tier, status: Comma-separated values or "all"
        start, end: ISO dates (inclusive)
        q: Free-text search
    """
    try:
        filters = AlertFilters.from_query(request.args)
        alerts = await components.store.list_alerts(_tenant_id(), _scope())

        now = utc_now()
        window = components.config.resolved_window_days
        previous = stats_as_of(alerts, now - timedelta(days=7), resolved_window_days=window)
        stats = compute_stats(alerts, previous=previous, now=now, resolved_window_days=window)
        view = apply_filters(alerts, filters)

        return jsonify({
            "alerts": [alert.to_document() for alert in view],
            "count": len(view),
            "total_in_scope": len(alerts),
            "stats": stats.to_dict(),
            "filters": filters.to_dict(),
        }), 200

    except ValidationFailed as e:
        return jsonify({"error": "validation_failed", "message": str(e)}), 400
    except PersistenceUnavailable as e:
        logger.error("ALERT_LIST_UNAVAILABLE", extra={"error": str(e)})
        return jsonify({"error": "persistence_unavailable"}), 503
    except Exception as e:
        logger.error("ALERT_LIST_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to list alerts"}), 500


@app.route("/alerts/export", methods=["GET"])
async def export_alerts():
    """CSV of the filtered view in display order (newest first)."""
    try:
        filters = AlertFilters.from_query(request.args)
        tenant_id = _tenant_id()
        alerts = await components.store.list_alerts(tenant_id, _scope())
        result = export_csv(apply_filters(alerts, filters))

        components.audit_logger.log(
            action=AuditAction.EXPORT_DATA,
            entity_type=AuditEntity.ALERT_EXPORT,
            entity_id=result.filename,
            actor_id=request.args.get("actor_id") or "unknown",
            actor_role="responder",
            tenant_id=tenant_id,
            details={"row_count": result.row_count, "filters": filters.to_dict()},
        )

        return Response(
            result.content,
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
        )

    except ValidationFailed as e:
        return jsonify({"error": "validation_failed", "message": str(e)}), 400
    except Exception as e:
        logger.error("ALERT_EXPORT_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to export alerts"}), 500


@app.route("/alerts/<alert_id>", methods=["GET"])
async def get_alert(alert_id: str):
    """Alert document with its response log and trail verification."""
    try:
        alert = await components.store.get(alert_id)
        document = alert.to_document()
        document["trail_valid"] = verify_trail(alert.id, alert.response_log)
        return jsonify(document), 200

    except NotFoundError:
        return jsonify({"error": "Alert not found"}), 404
    except PersistenceUnavailable as e:
        logger.error("ALERT_GET_UNAVAILABLE", extra={"error": str(e)})
        return jsonify({"error": "persistence_unavailable"}), 503
    except Exception as e:
        logger.error("ALERT_GET_ERROR", extra={"alert_id": alert_id, "error": str(e)})
        return jsonify({"error": "Failed to load alert"}), 500


@app.route("/alerts/<alert_id>/audit", methods=["GET"])
def get_alert_audit(alert_id: str):
    """Platform audit entries recorded for one alert, newest first."""
    try:
        limit = int(request.args.get("limit", "100"))
    except ValueError:
        return jsonify({"error": "validation_failed", "message": "invalid limit"}), 400

    try:
        entries = components.audit_logger.query(
            entity_type=AuditEntity.CRISIS_ALERT,
            entity_id=alert_id,
            limit=limit,
        )
        repository = components.audit_logger.repository
        return jsonify({
            "alert_id": alert_id,
            "entries": [repository.to_document(entry) for entry in entries],
            "count": len(entries),
        }), 200

    except Exception as e:
        logger.error("ALERT_AUDIT_QUERY_ERROR", extra={"alert_id": alert_id, "error": str(e)})
        return jsonify({"error": "Failed to query audit log"}), 500


@app.route("/alerts/<alert_id>/actions", methods=["POST"])
async def submit_action(alert_id: str):
    """Apply a responder action.

    Request Body:
        {
            "action": "acknowledge",
            "actor_id": "coach_001",
            "actor_name": "Jordan",
            "note": "optional, required for respond/resolve/note",
            "destination": "optional, escalate only"
        }

    Response:
        200 with the updated alert and the appended log entry
        409 precondition_failed with the current status if not allowed
    """
    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"error": "Request body required"}), 400

        result = await components.processor.submit(ActionRequest.from_dict(alert_id, data))
        return jsonify(result.to_dict()), 200

    except ValidationFailed as e:
        return jsonify({"error": "validation_failed", "message": str(e)}), 400
    except NotFoundError:
        return jsonify({"error": "Alert not found"}), 404
    except PreconditionFailed as e:
        return jsonify(e.to_dict()), 409
    except PersistenceUnavailable as e:
        logger.error(
            "ALERT_ACTION_UNAVAILABLE",
            extra={"alert_id": alert_id, "error": str(e)}
        )
        return jsonify({"error": "persistence_unavailable", "message": str(e)}), 503
    except Exception as e:
        logger.error("ALERT_ACTION_ERROR", extra={"alert_id": alert_id, "error": str(e)})
        return jsonify({"error": "Failed to apply action"}), 500


@app.route("/alerts/<alert_id>/deliveries/<channel>", methods=["POST"])
async def record_delivery(alert_id: str, channel: str):
    """Dispatcher report that ``channel`` was sent.

    Request Body (optional):
        {"sent_at": "2024-05-01T12:00:00Z", "dispatcher_id": "push-worker"}
    """
    try:
        data = request.get_json(silent=True) or {}
        sent_at = None
        if data.get("sent_at"):
            try:
                sent_at = parse_iso(data["sent_at"])
            except ValueError:
                return jsonify({"error": "validation_failed", "message": "invalid sent_at"}), 400

        result = await components.deliveries.record(
            alert_id,
            channel,
            sent_at=sent_at,
            dispatcher_id=data.get("dispatcher_id") or "notification-dispatcher",
        )
        return jsonify({
            "alert_id": alert_id,
            "channel": result.channel.value,
            "changed": result.changed,
            "deliveries": result.alert.deliveries.to_dict(),
        }), 200

    except ValidationFailed as e:
        return jsonify({"error": "validation_failed", "message": str(e)}), 400
    except NotFoundError:
        return jsonify({"error": "Alert not found"}), 404
    except Exception as e:
        logger.error(
            "ALERT_DELIVERY_ERROR",
            extra={"alert_id": alert_id, "channel": channel, "error": str(e)}
        )
        return jsonify({"error": "Failed to record delivery"}), 500


@app.route("/audit/verify", methods=["GET"])
def verify_audit_chain():
    """Verify the platform audit chain."""
    try:
        valid = components.audit_logger.verify_chain()
        return jsonify({"valid": valid}), 200 if valid else 500
    except Exception as e:
        logger.error("AUDIT_VERIFY_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to verify audit chain"}), 500


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "8003"))
    app.run(host="0.0.0.0", port=port, debug=False)
