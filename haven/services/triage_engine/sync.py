"""Live synchronization layer.

A ``LiveSyncSession`` owns one subscriber's working set. It consumes the
store's change feed and, after every change, emits a full-population
``TriageSnapshot``: the ordered working set, the filtered view and the
statistics recomputed from it. Nothing is recomputed on a timer.

Usage:
    async with subscribe(store, "full-service") as session:
        async for snapshot in session:
            render(snapshot)

A degraded feed never raises into the consumer: the session keeps the
last-known-good working set and flags the snapshot ``stale`` until the
store delivers a fresh full population.
"""
import bisect
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from haven.shared.errors import ValidationFailed
from haven.shared.models import AlertStatus, AlertTier, CrisisAlert
from haven.shared.utils import utc_now
from haven.services.alert_store import (
    AlertStore,
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    SubscriptionScope,
)
from .audit_trail import extends
from .filters import DEFAULT_FILTERS, AlertFilters, apply_filters
from .records import SkippedRecord, decode_records
from .stats import StatsSummary, compute_stats, stats_as_of

logger = logging.getLogger(__name__)


def _sort_key(alert: CrisisAlert) -> Tuple[datetime, str]:
    return (alert.created_at, alert.id)


class WorkingSet:
    """Alerts ordered newest first by ``created_at`` (ties by id).

    Keys are kept ascending so inserts are a bisect; an update replaces the
    record without touching the order because ``created_at`` never changes.
    """

    def __init__(self, limit: int = 200):
        self.limit = limit
        self._alerts: Dict[str, CrisisAlert] = {}
        self._keys: List[Tuple[datetime, str]] = []

    def __len__(self) -> int:
        return len(self._alerts)

    def __contains__(self, alert_id: str) -> bool:
        return alert_id in self._alerts

    def get(self, alert_id: str) -> Optional[CrisisAlert]:
        return self._alerts.get(alert_id)

    def reset(self, alerts: Iterable[CrisisAlert]) -> None:
        self._alerts = {alert.id: alert for alert in alerts}
        self._keys = sorted(_sort_key(alert) for alert in self._alerts.values())
        self._trim()

    def upsert(self, alert: CrisisAlert) -> bool:
        """Insert or replace; returns True if the alert was new."""
        if alert.id in self._alerts:
            self._alerts[alert.id] = alert
            return False
        self._alerts[alert.id] = alert
        bisect.insort(self._keys, _sort_key(alert))
        self._trim()
        return alert.id in self._alerts

    def remove(self, alert_id: str) -> bool:
        alert = self._alerts.pop(alert_id, None)
        if alert is None:
            return False
        index = bisect.bisect_left(self._keys, _sort_key(alert))
        del self._keys[index]
        return True

    def ordered(self) -> Tuple[CrisisAlert, ...]:
        return tuple(self._alerts[key[1]] for key in reversed(self._keys))

    def _trim(self) -> None:
        while len(self._keys) > self.limit:
            _, alert_id = self._keys.pop(0)
            del self._alerts[alert_id]


@dataclass(frozen=True)
class TriageSnapshot:
    """Complete, order-consistent state of one session after a change."""
    version: int
    alerts: Tuple[CrisisAlert, ...]
    view: Tuple[CrisisAlert, ...]
    stats: StatsSummary
    filters: AlertFilters
    stale: bool = False
    stale_reason: Optional[str] = None
    new_critical_ids: Tuple[str, ...] = ()
    rejected: Tuple[SkippedRecord, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "alerts": [alert.to_document() for alert in self.view],
            "total_in_scope": len(self.alerts),
            "stats": self.stats.to_dict(),
            "filters": self.filters.to_dict(),
            "stale": self.stale,
            "stale_reason": self.stale_reason,
            "new_critical_ids": list(self.new_critical_ids),
            "rejected": [record.to_dict() for record in self.rejected],
        }


def _is_new_critical(alert: CrisisAlert) -> bool:
    return alert.tier is AlertTier.CRITICAL and alert.status is AlertStatus.UNREAD


class LiveSyncSession:
    """One subscriber's view of an alert population."""

    def __init__(
        self,
        store: AlertStore,
        tenant_id: str,
        scope: Optional[SubscriptionScope] = None,
        filters: AlertFilters = DEFAULT_FILTERS,
        resolved_window_days: int = 30,
        trend_days: Optional[int] = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.tenant_id = tenant_id
        self.scope = scope or SubscriptionScope()
        self.filters = filters
        self.resolved_window_days = resolved_window_days
        self.trend_days = trend_days
        self._clock = clock or utc_now

        self._working_set = WorkingSet(limit=self.scope.limit)
        self._rejected: Dict[str, SkippedRecord] = {}
        self._feed: Optional[ChangeFeed] = None
        self._loaded = False
        self._stale_reason: Optional[str] = None
        self._version = 0
        self._snapshot: Optional[TriageSnapshot] = None

    @property
    def snapshot(self) -> Optional[TriageSnapshot]:
        """Most recent snapshot, or None before the first change."""
        return self._snapshot

    @property
    def stale(self) -> bool:
        return self._stale_reason is not None

    async def open(self) -> "LiveSyncSession":
        if self._feed is None:
            self._feed = await self.store.subscribe(self.tenant_id, self.scope)
            logger.info(
                "SYNC_SESSION_OPENED",
                extra={
                    "tenant_id": self.tenant_id,
                    "responder_scoped": self.scope.responder_id is not None,
                    "limit": self.scope.limit,
                }
            )
        return self

    async def close(self) -> None:
        """Unsubscribe; iteration ends once queued changes are drained."""
        if self._feed is not None and not self._feed.closed:
            self._feed.close()
            logger.info("SYNC_SESSION_CLOSED", extra={"tenant_id": self.tenant_id})

    async def __aenter__(self) -> "LiveSyncSession":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def __aiter__(self) -> "LiveSyncSession":
        return self

    async def __anext__(self) -> TriageSnapshot:
        if self._feed is None:
            await self.open()
        event = await self._feed.__anext__()
        return self.apply(event)

    async def next_snapshot(self) -> TriageSnapshot:
        """Wait for the next change and return the resulting snapshot."""
        return await self.__anext__()

    def update_filters(self, filters: AlertFilters) -> TriageSnapshot:
        """Change the filter state and recompute without waiting for the feed."""
        self.filters = filters
        logger.debug(
            "SYNC_FILTERS_UPDATED",
            extra={"tenant_id": self.tenant_id, "default": filters.is_default}
        )
        return self._emit(())

    def apply(self, event: ChangeEvent) -> TriageSnapshot:
        """Fold one change into the working set and emit a snapshot."""
        new_critical: Tuple[str, ...] = ()

        if event.kind is ChangeKind.RESYNC:
            new_critical = self._apply_resync(event.documents)
        elif event.kind in (ChangeKind.ADDED, ChangeKind.MODIFIED):
            new_critical = self._apply_document(event.alert_id, event.document)
        elif event.kind is ChangeKind.REMOVED:
            self._working_set.remove(event.alert_id)
            self._rejected.pop(event.alert_id, None)
        elif event.kind is ChangeKind.STALE:
            self._stale_reason = str(event.error) if event.error else "change feed degraded"
            logger.warning(
                "SYNC_FEED_STALE",
                extra={"tenant_id": self.tenant_id, "reason": self._stale_reason}
            )

        logger.debug(
            "SYNC_CHANGE_APPLIED",
            extra={
                "tenant_id": self.tenant_id,
                "kind": event.kind.value,
                "alert_id": event.alert_id,
                "working_set_size": len(self._working_set),
            }
        )
        return self._emit(new_critical)

    def _apply_resync(self, documents) -> Tuple[str, ...]:
        alerts, skipped = decode_records(documents)
        known = {alert.id for alert in self._working_set.ordered()}
        first_load = not self._loaded

        self._working_set.reset(alerts)
        self._rejected = {record.record_id: record for record in skipped}
        self._loaded = True
        if self._stale_reason is not None:
            logger.info("SYNC_FEED_RECOVERED", extra={"tenant_id": self.tenant_id})
        self._stale_reason = None

        if first_load:
            return ()
        return tuple(
            alert.id for alert in self._working_set.ordered()
            if alert.id not in known and _is_new_critical(alert)
        )

    def _apply_document(self, alert_id: Optional[str], document) -> Tuple[str, ...]:
        alerts, skipped = decode_records([document])
        if skipped:
            # Keep the last good version of the record, if any
            self._rejected[skipped[0].record_id] = skipped[0]
            return ()

        alert = alerts[0]
        self._rejected.pop(alert.id, None)
        previous = self._working_set.get(alert.id)

        if previous is not None and not extends(previous.response_log, alert.response_log):
            if extends(alert.response_log, previous.response_log):
                logger.debug(
                    "SYNC_OUTDATED_CHANGE_IGNORED",
                    extra={"alert_id": alert.id, "sequence": len(alert.response_log)}
                )
                return ()
            logger.critical(
                "SYNC_TRAIL_REWRITTEN",
                extra={
                    "alert_id": alert.id,
                    "known_entries": len(previous.response_log),
                    "received_entries": len(alert.response_log),
                }
            )

        added = self._working_set.upsert(alert)
        if added and self._loaded and _is_new_critical(alert):
            return (alert.id,)
        return ()

    def _emit(self, new_critical: Tuple[str, ...]) -> TriageSnapshot:
        now = self._clock()
        alerts = self._working_set.ordered()
        rejected = tuple(self._rejected.values())

        previous = None
        if self.trend_days:
            previous = stats_as_of(
                alerts,
                now - timedelta(days=self.trend_days),
                resolved_window_days=self.resolved_window_days,
            )
        stats = compute_stats(
            alerts,
            previous=previous,
            now=now,
            resolved_window_days=self.resolved_window_days,
        )

        self._version += 1
        self._snapshot = TriageSnapshot(
            version=self._version,
            alerts=alerts,
            view=tuple(apply_filters(alerts, self.filters)),
            stats=replace(stats, skipped=rejected),
            filters=self.filters,
            stale=self._stale_reason is not None,
            stale_reason=self._stale_reason,
            new_critical_ids=new_critical,
            rejected=rejected,
        )

        if new_critical:
            logger.warning(
                "SYNC_NEW_CRITICAL_ALERTS",
                extra={"tenant_id": self.tenant_id, "alert_ids": list(new_critical)}
            )
        return self._snapshot


def subscribe(
    store: AlertStore,
    tenant_id: str,
    scope: Optional[SubscriptionScope] = None,
    **options,
) -> LiveSyncSession:
    """Create a session; open it with ``async with`` or by iterating."""
    if not tenant_id:
        raise ValidationFailed("tenant_id is required")
    return LiveSyncSession(store, tenant_id, scope, **options)
