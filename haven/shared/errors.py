"""Error taxonomy for the crisis alert triage engine.

Transition errors are raised to the caller of an action. Feed errors are
carried inside snapshots as ``TransportStale`` instead of being raised.
"""
from typing import Optional


class TriageError(Exception):
    """Base exception for triage engine errors."""
    pass


class PreconditionFailed(TriageError):
    """An action is not valid for the alert's current persisted status.
    
    Always carries the authoritative status so the operator can see why
    the action was refused (e.g. already resolved by someone else).
    """
    
    def __init__(
        self,
        alert_id: str,
        action: str,
        current_status: str,
        last_actor_name: Optional[str] = None,
    ):
        self.alert_id = alert_id
        self.action = action
        self.current_status = current_status
        self.last_actor_name = last_actor_name
        
        message = f"cannot {action} alert {alert_id}: already {current_status}"
        if last_actor_name:
            message += f" by {last_actor_name}"
        super().__init__(message)
    
    def to_dict(self) -> dict:
        return {
            "error": "precondition_failed",
            "message": str(self),
            "alert_id": self.alert_id,
            "action": self.action,
            "current_status": self.current_status,
            "last_actor_name": self.last_actor_name,
        }


class ValidationFailed(TriageError, ValueError):
    """Malformed action payload or alert document."""
    pass


class TransportStale(TriageError):
    """The change feed is degraded; the working set may be out of date."""
    pass


class PersistenceUnavailable(TriageError):
    """A store operation could not complete."""
    pass
