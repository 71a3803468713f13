"""Triage engine configuration."""
import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class TriageConfig:
    """Runtime settings for the triage engine."""

    # Tenant used when a request does not name one
    default_tenant: str = "full-service"

    # Maximum alerts held in a subscriber's working set
    subscription_limit: int = 200

    # Trailing window for the "resolved" statistic
    resolved_window_days: int = 30

    # Re-plans after losing a compare-and-set before giving up
    max_conflict_retries: int = 3

    # memory | postgres
    store_backend: str = "memory"

    # Lifecycle event stream
    event_stream_name: str = "haven-alert-events"
    event_publishing_enabled: bool = False
    aws_region: str = "us-east-1"

    @classmethod
    def from_env(cls) -> "TriageConfig":
        """Create config from environment variables.

        Environment variables:
            HAVEN_DEFAULT_TENANT: Default tenant (default full-service)
            HAVEN_SUBSCRIPTION_LIMIT: Working set size (default 200)
            HAVEN_RESOLVED_WINDOW_DAYS: Resolved stat window (default 30)
            HAVEN_MAX_CONFLICT_RETRIES: Conflict re-plans (default 3)
            HAVEN_STORE_BACKEND: memory or postgres (default memory)
            HAVEN_EVENT_STREAM_NAME: Kinesis stream (default haven-alert-events)
            HAVEN_EVENT_PUBLISHING_ENABLED: Publish lifecycle events (default false)
            AWS_REGION: AWS region (default us-east-1)
        """
        backend = os.getenv("HAVEN_STORE_BACKEND", "memory").strip().lower()
        if backend not in ("memory", "postgres"):
            raise ValueError(f"HAVEN_STORE_BACKEND must be memory or postgres, got {backend!r}")

        return cls(
            default_tenant=os.getenv("HAVEN_DEFAULT_TENANT", "full-service"),
            subscription_limit=int(os.getenv("HAVEN_SUBSCRIPTION_LIMIT", "200")),
            resolved_window_days=int(os.getenv("HAVEN_RESOLVED_WINDOW_DAYS", "30")),
            max_conflict_retries=int(os.getenv("HAVEN_MAX_CONFLICT_RETRIES", "3")),
            store_backend=backend,
            event_stream_name=os.getenv("HAVEN_EVENT_STREAM_NAME", "haven-alert-events"),
            event_publishing_enabled=_env_bool("HAVEN_EVENT_PUBLISHING_ENABLED", False),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
        )
