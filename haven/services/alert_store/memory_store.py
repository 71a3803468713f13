"""In-memory alert store for development and tests.

Behaves like the production store where it matters: writes are atomic
under a lock, transitions are compare-and-set on status, ``created_at``
and log timestamps are assigned here, and every write is fanned out to
matching change feeds.
"""
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from haven.shared.database import ConflictError, DuplicateError, NotFoundError
from haven.shared.models import CrisisAlert, DeliveryChannel, ResponseLogEntry
from haven.shared.utils import utc_now
from haven.services.triage_engine.state_machine import Transition, apply_transition
from .base import (
    AlertStore,
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    SubscriptionScope,
    newest_first,
)

logger = logging.getLogger(__name__)


class InMemoryAlertStore(AlertStore):
    """Thread-safe dict-backed store with a live change feed."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._alerts: Dict[str, CrisisAlert] = {}
        self._feeds: List[ChangeFeed] = []

        logger.info("ALERT_STORE_INITIALIZED", extra={"backend": "memory"})

    async def create(self, alert: CrisisAlert) -> CrisisAlert:
        with self._lock:
            if alert.id in self._alerts:
                raise DuplicateError(f"alert {alert.id} already exists")
            now = self._clock()
            stored = replace(alert, created_at=now, updated_at=now)
            self._alerts[alert.id] = stored
            self._fan_out(stored)

        logger.debug("ALERT_STORED_MEMORY", extra={"alert_id": alert.id})
        return stored

    async def get(self, alert_id: str) -> CrisisAlert:
        with self._lock:
            alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        return alert

    async def list_alerts(
        self,
        tenant_id: str,
        scope: Optional[SubscriptionScope] = None,
    ) -> List[CrisisAlert]:
        scope = scope or SubscriptionScope()
        with self._lock:
            documents = self._documents_in_scope(tenant_id, scope)
        return [CrisisAlert.from_document(doc) for doc in documents]

    async def apply_transition(self, transition: Transition) -> Tuple[CrisisAlert, ResponseLogEntry]:
        with self._lock:
            current = self._alerts.get(transition.alert_id)
            if current is None:
                raise NotFoundError(f"alert {transition.alert_id} not found")
            if current.status is not transition.expected_status:
                raise ConflictError(
                    f"alert {current.id} is {current.status.value}, "
                    f"expected {transition.expected_status.value}",
                    current=current,
                )
            updated, entry = apply_transition(current, transition, self._clock())
            self._alerts[updated.id] = updated
            self._fan_out(updated)

        return updated, entry

    async def record_delivery(
        self,
        alert_id: str,
        channel: DeliveryChannel,
        sent_at: Optional[datetime] = None,
    ) -> Tuple[CrisisAlert, bool]:
        with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                raise NotFoundError(f"alert {alert_id} not found")
            if current.deliveries.channel(channel).sent:
                return current, False
            now = self._clock()
            updated = replace(
                current,
                deliveries=current.deliveries.with_sent(channel, sent_at or now),
                updated_at=now,
            )
            self._alerts[alert_id] = updated
            self._fan_out(updated)

        return updated, True

    async def purge(self, alert_id: str) -> bool:
        with self._lock:
            if self._alerts.pop(alert_id, None) is None:
                return False
            for feed in self._feeds:
                feed.offer_removal(alert_id)
        logger.info("ALERT_PURGED", extra={"alert_id": alert_id})
        return True

    async def subscribe(
        self,
        tenant_id: str,
        scope: Optional[SubscriptionScope] = None,
    ) -> ChangeFeed:
        scope = scope or SubscriptionScope()
        feed = ChangeFeed(tenant_id, scope, on_close=self._unsubscribe)
        with self._lock:
            documents = self._documents_in_scope(tenant_id, scope)
            feed.push(ChangeEvent(kind=ChangeKind.RESYNC, documents=documents))
            self._feeds.append(feed)

        logger.info(
            "CHANGE_FEED_OPENED",
            extra={
                "tenant_id": tenant_id,
                "responder_scoped": scope.responder_id is not None,
                "initial_count": len(documents),
            }
        )
        return feed

    async def close(self) -> None:
        with self._lock:
            feeds = list(self._feeds)
        for feed in feeds:
            feed.close()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._feeds)

    def _unsubscribe(self, feed: ChangeFeed) -> None:
        with self._lock:
            if feed in self._feeds:
                self._feeds.remove(feed)
        logger.info("CHANGE_FEED_CLOSED", extra={"tenant_id": feed.tenant_id})

    def _documents_in_scope(self, tenant_id: str, scope: SubscriptionScope):
        documents = [alert.to_document() for alert in self._alerts.values()]
        return newest_first(
            [doc for doc in documents if scope.matches(tenant_id, doc)],
            scope.limit,
        )

    def _fan_out(self, alert: CrisisAlert) -> None:
        # Called with self._lock held so feeds see writes in commit order
        document = alert.to_document()
        for feed in self._feeds:
            feed.offer(document)
