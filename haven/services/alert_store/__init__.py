"""Alert Record Store: persistence collaborator for crisis alerts.

Provides create, compare-and-set transitions with atomic log append,
write-once delivery flags and a live change feed per subscriber.

Backends:
- InMemoryAlertStore - development and tests
- PostgresAlertStore - production (LISTEN/NOTIFY change feed)
"""

from .base import (
    AlertStore,
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    SubscriptionScope,
    newest_first,
)
from .memory_store import InMemoryAlertStore
from .postgres_store import PostgresAlertStore

__all__ = [
    "AlertStore",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeKind",
    "SubscriptionScope",
    "newest_first",
    "InMemoryAlertStore",
    "PostgresAlertStore",
]
