"""Statistics aggregator.

Stats are always computed over the whole (unfiltered) working set so
filter buttons can show true counts. Each headline metric is defined as a
filter predicate, which keeps the counts and the filtered list views in
agreement by construction.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from haven.shared.models import (
    ACTIVE_STATUSES,
    AlertSource,
    AlertStatus,
    AlertTier,
    CrisisAlert,
    ResponseAction,
)
from haven.shared.utils import utc_now
from .audit_trail import status_at
from .filters import AlertFilters, Predicate, build_predicate
from .records import AlertRecord, SkippedRecord, decode_records

logger = logging.getLogger(__name__)

# Headline metrics that carry trend deltas
TREND_METRICS = ("critical_active", "high_active", "unread", "active", "resolved_recent")

METRIC_FILTERS: Dict[str, AlertFilters] = {
    "critical_active": AlertFilters(tiers=AlertTier.CRITICAL, statuses=ACTIVE_STATUSES),
    "high_active": AlertFilters(tiers=AlertTier.HIGH, statuses=ACTIVE_STATUSES),
    "unread": AlertFilters(statuses=AlertStatus.UNREAD),
    "active": AlertFilters(statuses=ACTIVE_STATUSES),
    "acknowledged": AlertFilters(statuses=AlertStatus.ACKNOWLEDGED),
    "resolved_total": AlertFilters(statuses=AlertStatus.RESOLVED),
}

RESPONSE_TIME_BUCKETS = ("<5 min", "5-15 min", "15-60 min", ">1 hour")


def resolved_within(now: datetime, window_days: int) -> Predicate:
    """Resolved, with ``resolved_at`` inside the trailing window."""
    since = now - timedelta(days=window_days)
    return lambda a: (
        a.status is AlertStatus.RESOLVED
        and a.resolved_at is not None
        and since <= a.resolved_at <= now
    )


def metric_predicates(now: datetime, window_days: int = 30) -> Dict[str, Predicate]:
    predicates = {name: build_predicate(f) for name, f in METRIC_FILTERS.items()}
    predicates["resolved_recent"] = resolved_within(now, window_days)
    return predicates


@dataclass(frozen=True)
class StatsSummary:
    """Counts over one working set."""
    total: int = 0
    critical_active: int = 0
    high_active: int = 0
    unread: int = 0
    active: int = 0
    acknowledged: int = 0
    resolved_total: int = 0
    resolved_recent: int = 0
    by_source: Dict[str, int] = field(default_factory=dict)
    by_tier: Dict[int, int] = field(default_factory=dict)
    timeline: Tuple[Tuple[str, int], ...] = ()
    response_times: Dict[str, int] = field(default_factory=dict)
    trends: Optional[Dict[str, int]] = None
    skipped: Tuple[SkippedRecord, ...] = ()
    as_of: Optional[datetime] = None

    def with_trends(self, previous: Optional["StatsSummary"]) -> "StatsSummary":
        """Signed delta per headline metric; no previous means no trends."""
        if previous is None:
            return replace(self, trends=None)
        return replace(
            self,
            trends={
                name: getattr(self, name) - getattr(previous, name)
                for name in TREND_METRICS
            },
        )

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "critical_active": self.critical_active,
            "high_active": self.high_active,
            "unread": self.unread,
            "active": self.active,
            "acknowledged": self.acknowledged,
            "resolved_total": self.resolved_total,
            "resolved_recent": self.resolved_recent,
            "by_source": dict(self.by_source),
            "by_tier": {str(tier): count for tier, count in self.by_tier.items()},
            "timeline": [{"date": day, "count": count} for day, count in self.timeline],
            "response_times": dict(self.response_times),
            "trends": dict(self.trends) if self.trends is not None else None,
            "skipped": [record.to_dict() for record in self.skipped],
        }


def daily_timeline(
    alerts: Iterable[CrisisAlert],
    days: int,
    now: datetime,
) -> Tuple[Tuple[str, int], ...]:
    """Alerts created per UTC day over the last ``days`` days, oldest first."""
    counts: "OrderedDict[str, int]" = OrderedDict()
    today = now.date()
    for offset in range(days - 1, -1, -1):
        counts[(today - timedelta(days=offset)).isoformat()] = 0
    for alert in alerts:
        if alert.created_at is None:
            continue
        key = alert.created_at.date().isoformat()
        if key in counts:
            counts[key] += 1
    return tuple(counts.items())


def response_time_distribution(alerts: Iterable[CrisisAlert]) -> Dict[str, int]:
    """Time from creation to acknowledgement, bucketed."""
    buckets = {label: 0 for label in RESPONSE_TIME_BUCKETS}
    for alert in alerts:
        if alert.acknowledged_at is None or alert.created_at is None:
            continue
        minutes = (alert.acknowledged_at - alert.created_at).total_seconds() / 60
        if minutes < 5:
            buckets["<5 min"] += 1
        elif minutes < 15:
            buckets["5-15 min"] += 1
        elif minutes < 60:
            buckets["15-60 min"] += 1
        else:
            buckets[">1 hour"] += 1
    return buckets


def compute_stats(
    records: Iterable[AlertRecord],
    previous: Optional[StatsSummary] = None,
    now: Optional[datetime] = None,
    resolved_window_days: int = 30,
    timeline_days: int = 30,
) -> StatsSummary:
    """Aggregate statistics over a whole working set.

    Args:
        records: Alerts or raw documents; undecodable ones are skipped
        previous: Previous-period summary for trend deltas
        now: Reference time (defaults to the current time)
        resolved_window_days: Trailing window for ``resolved_recent``
        timeline_days: Days covered by the per-day timeline
    """
    now = now or utc_now()
    alerts, skipped = decode_records(records)
    predicates = metric_predicates(now, resolved_window_days)

    counts = {name: 0 for name in predicates}
    by_source = {source.value: 0 for source in AlertSource}
    by_tier = {int(tier): 0 for tier in AlertTier}
    for alert in alerts:
        for name, predicate in predicates.items():
            if predicate(alert):
                counts[name] += 1
        by_source[alert.source.value] += 1
        by_tier[int(alert.tier)] += 1

    summary = StatsSummary(
        total=len(alerts),
        by_source=by_source,
        by_tier=by_tier,
        timeline=daily_timeline(alerts, timeline_days, now),
        response_times=response_time_distribution(alerts),
        skipped=tuple(skipped),
        as_of=now,
        **counts,
    )
    if skipped:
        logger.warning(
            "ALERT_STATS_RECORDS_SKIPPED",
            extra={"skipped": len(skipped), "total": len(alerts)}
        )
    return summary.with_trends(previous)


def _first_entry_at(alert: CrisisAlert, action: ResponseAction, as_of: datetime) -> Optional[datetime]:
    for entry in alert.response_log:
        if entry.timestamp > as_of:
            break
        if entry.action is action:
            return entry.timestamp
    return None


def alert_as_of(alert: CrisisAlert, as_of: datetime) -> Optional[CrisisAlert]:
    """The alert as it stood at ``as_of``, replayed from its log.

    Returns None if the alert did not exist yet.
    """
    if alert.created_at is None or alert.created_at > as_of:
        return None
    return replace(
        alert,
        status=status_at(alert.response_log, as_of),
        acknowledged_at=_first_entry_at(alert, ResponseAction.ACKNOWLEDGED, as_of),
        resolved_at=_first_entry_at(alert, ResponseAction.RESOLVED, as_of),
        response_log=tuple(e for e in alert.response_log if e.timestamp <= as_of),
    )


def stats_as_of(
    records: Iterable[AlertRecord],
    as_of: datetime,
    resolved_window_days: int = 30,
    timeline_days: int = 30,
) -> StatsSummary:
    """Reconstruct the summary the same population had at ``as_of``.

    Used as the previous-period snapshot for trends when no stored history
    exists.
    """
    alerts, skipped = decode_records(records)
    past: List[CrisisAlert] = []
    for alert in alerts:
        then = alert_as_of(alert, as_of)
        if then is not None:
            past.append(then)
    summary = compute_stats(
        past,
        now=as_of,
        resolved_window_days=resolved_window_days,
        timeline_days=timeline_days,
    )
    return replace(summary, skipped=tuple(skipped))
