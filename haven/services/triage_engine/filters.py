"""Filter compositor.

One predicate over six independent dimensions: source, tier, status,
created-at range (inclusive), free-text search and explicit person or
responder id. Dimensions combine by conjunction and an unset dimension
matches everything, so composing filters is commutative and idempotent.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from haven.shared.errors import ValidationFailed
from haven.shared.models import (
    ACTIVE_STATUSES,
    AlertSource,
    AlertStatus,
    AlertTier,
    CrisisAlert,
)
from haven.shared.utils import ensure_utc, parse_iso

ALL = "all"

Predicate = Callable[[CrisisAlert], bool]


def _as_set(value: Any, parse: Callable[[Any], Any], name: str) -> Optional[FrozenSet]:
    if value is None or value == ALL:
        return None
    if isinstance(value, (str, int)) or not isinstance(value, Iterable):
        value = (value,)
    try:
        parsed = frozenset(parse(item) for item in value)
    except (ValueError, TypeError) as e:
        raise ValidationFailed(f"invalid {name} filter: {value!r}") from e
    return parsed or None


def _parse_source(value: Any) -> AlertSource:
    if isinstance(value, AlertSource):
        return value
    return AlertSource.parse(str(value))


def _parse_tier(value: Any) -> AlertTier:
    return AlertTier(int(value))


def _parse_status(value: Any) -> AlertStatus:
    return AlertStatus(value)


@dataclass(frozen=True)
class AlertFilters:
    """Filter state; ``None`` on a dimension means "all".

    Enumerated dimensions take a single value or any iterable of values.
    """
    sources: Optional[FrozenSet[AlertSource]] = None
    tiers: Optional[FrozenSet[AlertTier]] = None
    statuses: Optional[FrozenSet[AlertStatus]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    search: str = ""
    person_id: Optional[str] = None
    responder_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "sources", _as_set(self.sources, _parse_source, "source"))
        object.__setattr__(self, "tiers", _as_set(self.tiers, _parse_tier, "tier"))
        object.__setattr__(self, "statuses", _as_set(self.statuses, _parse_status, "status"))
        object.__setattr__(self, "start", ensure_utc(self.start) if self.start else None)
        object.__setattr__(self, "end", ensure_utc(self.end) if self.end else None)
        object.__setattr__(self, "search", (self.search or "").strip())
        if self.start and self.end and self.start > self.end:
            raise ValidationFailed("date range start is after end")

    def merged(self, **changes) -> "AlertFilters":
        """New filter state with ``changes`` applied."""
        return replace(self, **changes)

    @property
    def is_default(self) -> bool:
        return self == DEFAULT_FILTERS

    @classmethod
    def from_query(cls, args: Dict[str, str]) -> "AlertFilters":
        """Build filters from query-string style arguments.

        Enumerated values are comma-separated. ``end`` given as a bare date
        covers that whole day.

        Raises:
            ValidationFailed: On unparseable values
        """
        def split(key: str):
            raw = (args.get(key) or "").strip()
            if not raw or raw == ALL:
                return None
            return [part.strip() for part in raw.split(",") if part.strip()]

        try:
            start = parse_iso(args["start"]) if args.get("start") else None
            end = parse_iso(args["end"]) if args.get("end") else None
        except ValueError as e:
            raise ValidationFailed(f"invalid date range: {e}") from e
        if end is not None and len(args["end"].strip()) == 10:
            end = end + timedelta(days=1) - timedelta(microseconds=1)

        return cls(
            sources=split("source"),
            tiers=split("tier"),
            statuses=split("status"),
            start=start,
            end=end,
            search=args.get("q") or args.get("search") or "",
            person_id=args.get("person_id") or None,
            responder_id=args.get("responder_id") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": sorted(s.value for s in self.sources) if self.sources else ALL,
            "tier": sorted(int(t) for t in self.tiers) if self.tiers else ALL,
            "status": sorted(s.value for s in self.statuses) if self.statuses else ALL,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "search": self.search,
            "person_id": self.person_id,
            "responder_id": self.responder_id,
        }


DEFAULT_FILTERS = AlertFilters()

ACTIVE_ONLY = AlertFilters(statuses=ACTIVE_STATUSES)


def _matches_search(alert: CrisisAlert, needle: str) -> bool:
    haystacks = [alert.person_name, alert.assigned_responder_name or "", alert.context]
    haystacks.extend(alert.trigger_terms)
    return any(needle in text.lower() for text in haystacks)


def build_predicate(filters: AlertFilters) -> Predicate:
    """Compose the effective predicate for ``filters``."""
    checks: List[Predicate] = []

    if filters.sources is not None:
        checks.append(lambda a: a.source in filters.sources)
    if filters.tiers is not None:
        checks.append(lambda a: a.tier in filters.tiers)
    if filters.statuses is not None:
        checks.append(lambda a: a.status in filters.statuses)
    if filters.start is not None:
        checks.append(lambda a: a.created_at is not None and a.created_at >= filters.start)
    if filters.end is not None:
        checks.append(lambda a: a.created_at is not None and a.created_at <= filters.end)
    if filters.search:
        needle = filters.search.lower()
        checks.append(lambda a: _matches_search(a, needle))
    if filters.person_id is not None:
        checks.append(lambda a: a.person_id == filters.person_id)
    if filters.responder_id is not None:
        checks.append(lambda a: a.assigned_responder_id == filters.responder_id)

    def predicate(alert: CrisisAlert) -> bool:
        return all(check(alert) for check in checks)

    return predicate


def apply_filters(alerts: Iterable[CrisisAlert], filters: AlertFilters) -> List[CrisisAlert]:
    """Alerts matching ``filters``, in their given order."""
    predicate = build_predicate(filters)
    return [alert for alert in alerts if predicate(alert)]
