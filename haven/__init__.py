"""Haven crisis alert triage engine."""

__version__ = "0.1.0"
