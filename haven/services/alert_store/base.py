"""Alert Record Store interface and change-feed primitives.

The engine needs only four things from persistence: create a record, apply
a transition atomically (append-to-trail plus status update, guarded by the
expected status), record a delivery flag, and a live change feed.

Change feeds are loop-bound asyncio queues fed through
``call_soon_threadsafe`` so a store may publish from any thread.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from haven.shared.errors import TransportStale
from haven.shared.models import CrisisAlert, DeliveryChannel, ResponseLogEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionScope:
    """Restricts a subscription, e.g. a coach sees only their people."""
    responder_id: Optional[str] = None
    limit: int = 200

    def matches(self, tenant_id: str, document: Dict[str, Any]) -> bool:
        if document.get("tenant_id") != tenant_id:
            return False
        if self.responder_id is not None:
            return document.get("assigned_responder_id") == self.responder_id
        return True


class ChangeKind(Enum):
    RESYNC = "resync"      # full population (initial, or after recovery)
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    STALE = "stale"        # transport degraded


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    alert_id: Optional[str] = None
    document: Optional[Dict[str, Any]] = None
    documents: Tuple[Dict[str, Any], ...] = ()
    error: Optional[TransportStale] = None


_CLOSED = object()


class ChangeFeed:
    """Live, non-terminating stream of changes for one subscriber.

    Iterate with ``async for``; iteration ends only after :meth:`close`.
    Must be created from inside the subscriber's event loop.
    """

    def __init__(
        self,
        tenant_id: str,
        scope: SubscriptionScope,
        on_close: Optional[Callable[["ChangeFeed"], None]] = None,
    ):
        self.tenant_id = tenant_id
        self.scope = scope
        self._on_close = on_close
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._known_ids: Set[str] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: ChangeEvent) -> None:
        """Enqueue an event; safe to call from any thread."""
        if self._closed:
            return
        if event.kind is ChangeKind.RESYNC:
            self._known_ids = {doc.get("id") for doc in event.documents}
        self._enqueue(event)

    def offer(self, document: Dict[str, Any]) -> None:
        """Route a written document through this feed's scope.

        Emits ADDED/MODIFIED while the document is in scope, and REMOVED
        when an update moves a previously visible record out of scope.
        """
        alert_id = document.get("id")
        if self.scope.matches(self.tenant_id, document):
            kind = ChangeKind.MODIFIED if alert_id in self._known_ids else ChangeKind.ADDED
            self._known_ids.add(alert_id)
            self.push(ChangeEvent(kind=kind, alert_id=alert_id, document=document))
        elif alert_id in self._known_ids:
            self.offer_removal(alert_id)

    def offer_removal(self, alert_id: str) -> None:
        if alert_id in self._known_ids:
            self._known_ids.discard(alert_id)
            self.push(ChangeEvent(kind=ChangeKind.REMOVED, alert_id=alert_id))

    def mark_stale(self, reason: str) -> None:
        self.push(ChangeEvent(kind=ChangeKind.STALE, error=TransportStale(reason)))

    def _enqueue(self, item: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Subscriber's loop is gone; nobody is listening any more
            logger.warning(
                "CHANGE_FEED_LOOP_CLOSED",
                extra={"tenant_id": self.tenant_id}
            )
            self._closed = True

    def close(self) -> None:
        """Unsubscribe. Pending iteration ends after queued events drain."""
        if self._closed:
            return
        self._enqueue(_CLOSED)
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self) -> "ChangeFeed":
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "ChangeFeed":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


def newest_first(documents: List[Dict[str, Any]], limit: int) -> Tuple[Dict[str, Any], ...]:
    """Order documents by created_at descending (ties by id), then limit."""
    ordered = sorted(
        documents,
        key=lambda doc: (doc.get("created_at") or "", doc.get("id") or ""),
        reverse=True,
    )
    return tuple(ordered[:limit])


class AlertStore(ABC):
    """Persistence collaborator for crisis alerts."""

    @abstractmethod
    async def create(self, alert: CrisisAlert) -> CrisisAlert:
        """Persist a new alert, assigning ``created_at``.

        Raises:
            DuplicateError: If the id already exists
        """

    @abstractmethod
    async def get(self, alert_id: str) -> CrisisAlert:
        """Load the persisted alert.

        Raises:
            NotFoundError: If it does not exist
        """

    @abstractmethod
    async def list_alerts(
        self,
        tenant_id: str,
        scope: Optional[SubscriptionScope] = None,
    ) -> List[CrisisAlert]:
        """Alerts in scope, newest first, at most ``scope.limit``."""

    @abstractmethod
    async def apply_transition(self, transition) -> Tuple[CrisisAlert, ResponseLogEntry]:
        """Atomically append the log entry and update status.

        Raises:
            NotFoundError: If the alert does not exist
            ConflictError: If the persisted status is not
                ``transition.expected_status``
        """

    @abstractmethod
    async def record_delivery(
        self,
        alert_id: str,
        channel: DeliveryChannel,
        sent_at: Optional[datetime] = None,
    ) -> Tuple[CrisisAlert, bool]:
        """Set a channel's sent flag once.

        Returns:
            (alert, True if this call set the flag)
        """

    @abstractmethod
    async def purge(self, alert_id: str) -> bool:
        """Remove a record under retention policy."""

    @abstractmethod
    async def subscribe(
        self,
        tenant_id: str,
        scope: Optional[SubscriptionScope] = None,
    ) -> ChangeFeed:
        """Open a change feed; the first event is a RESYNC."""

    async def close(self) -> None:
        """Release store resources."""
