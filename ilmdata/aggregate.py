# FILE: ilmdata/aggregate.py
"""
Summary statistics and leaderboards over normalized records.

Everything here is rebuilt from the full record set on each call; there is
no persisted aggregate state.

Ordering is total in every ranked output: after the numeric sort keys, ties
fall back to the (case-folded) group key, so results do not depend on the
order records arrive in.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
)

from .utils import iso_day, round2, safe_float

R = TypeVar("R")

KeyFn = Callable[[R], Any]
MeasureFn = Callable[[R], float]


def normalize_key(value: Any) -> Any:
    """Text keys compare case-insensitively; other keys pass through."""
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _sort_token(key: Any) -> Tuple[int, Any]:
    # keeps mixed key types orderable: numbers first, then text
    if isinstance(key, (int, float)) and not isinstance(key, bool):
        return (0, key)
    return (1, str(key))


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Summary:
    total: int
    unique_actors: int
    measure_sum: float
    zero_measure: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize(
    records: Iterable[R],
    measure_fn: MeasureFn,
    actor_fn: KeyFn,
) -> Summary:
    total = 0
    zero = 0
    measures: List[float] = []
    actors: Set[Any] = set()
    for rec in records:
        total += 1
        m = safe_float(measure_fn(rec))
        measures.append(m)
        if m == 0:
            zero += 1
        actors.add(normalize_key(actor_fn(rec)))
    return Summary(
        total=total,
        unique_actors=len(actors),
        measure_sum=_int_if_whole(math.fsum(measures)),
        zero_measure=zero,
    )


def _int_if_whole(x: float) -> Any:
    return int(x) if float(x).is_integer() else x


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregateEntry:
    """
    One leaderboard row.

    key is the normalized group key used for grouping and tie-breaks;
    label is the smallest original spelling seen for that key.
    """

    key: Any
    label: Any
    occurrences: int
    reporters: int
    measure_sum: Any
    average_measure_per_occurrence: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _Accumulator:
    __slots__ = ("label", "occurrences", "measures", "actors")

    def __init__(self, label: Any) -> None:
        self.label = label
        self.occurrences = 0
        self.measures: List[float] = []
        self.actors: Set[Any] = set()

    @property
    def measure_sum(self) -> float:
        # correctly rounded, independent of arrival order
        return math.fsum(self.measures)


def rank_key(measure_sum: float, occurrences: int, key: Any) -> Tuple[float, int, Tuple[int, Any]]:
    """Sort key: measure desc, occurrences desc, key asc."""
    return (-measure_sum, -occurrences, _sort_token(key))


def aggregate(
    records: Iterable[R],
    group_key_fn: KeyFn,
    measure_fn: MeasureFn,
    actor_key_fn: KeyFn,
) -> List[AggregateEntry]:
    """All groups, fully ranked."""
    groups: Dict[Any, _Accumulator] = {}
    for rec in records:
        raw = group_key_fn(rec)
        key = normalize_key(raw)
        acc = groups.get(key)
        if acc is None:
            acc = _Accumulator(raw)
            groups[key] = acc
        elif _sort_token(raw) < _sort_token(acc.label):
            acc.label = raw
        acc.occurrences += 1
        acc.measures.append(safe_float(measure_fn(rec)))
        acc.actors.add(normalize_key(actor_key_fn(rec)))

    entries = [
        AggregateEntry(
            key=key,
            label=acc.label,
            occurrences=acc.occurrences,
            reporters=len(acc.actors),
            measure_sum=_int_if_whole(acc.measure_sum),
            average_measure_per_occurrence=(
                round2(acc.measure_sum / acc.occurrences) if acc.occurrences else 0.0
            ),
        )
        for key, acc in groups.items()
    ]
    entries.sort(key=lambda e: rank_key(float(e.measure_sum), e.occurrences, e.key))
    return entries


def top_n(
    records: Iterable[R],
    group_key_fn: KeyFn,
    measure_fn: MeasureFn,
    actor_key_fn: KeyFn,
    n: int,
) -> List[AggregateEntry]:
    if n <= 0:
        return []
    return aggregate(records, group_key_fn, measure_fn, actor_key_fn)[:n]


# ---------------------------------------------------------------------------
# Category breakdowns
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CategoryShare:
    name: str
    count: int
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_name(value: Any, lookup: Optional[Mapping[str, str]]) -> str:
    if lookup is None:
        return str(value)
    ident = str(value)
    name = lookup.get(ident)
    return name if name else f"Unknown ({ident})"


def count_by(
    records: Iterable[R],
    category_fn: KeyFn,
    lookup: Optional[Mapping[str, str]] = None,
) -> List[Tuple[str, int]]:
    """Raw counts per category name, count desc then name asc."""
    counts: Dict[str, int] = {}
    for rec in records:
        name = resolve_name(category_fn(rec), lookup)
        counts[name] = counts.get(name, 0) + 1
    return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))


def percentage_breakdown(
    records: Sequence[R],
    category_fn: KeyFn,
    lookup: Optional[Mapping[str, str]] = None,
) -> List[CategoryShare]:
    """
    Counts per category with their share of the whole record set.

    The denominator is len(records), not the sum over a truncated slice, so
    a caller showing only the top rows still shows true percentages.
    """
    total = len(records)
    return [
        CategoryShare(
            name=name,
            count=count,
            percentage=round2(count / total * 100) if total else 0.0,
        )
        for name, count in count_by(records, category_fn, lookup)
    ]


def top_names(shares: Sequence[CategoryShare], n: int) -> List[str]:
    return [s.name for s in shares[: max(n, 0)]]


def count_by_day(records: Iterable[R], ts_fn: Callable[[R], int]) -> List[Tuple[str, int]]:
    """Records per UTC calendar day, oldest first."""
    counts: Dict[str, int] = {}
    for rec in records:
        day = iso_day(int(ts_fn(rec)))
        counts[day] = counts.get(day, 0) + 1
    return sorted(counts.items())


__all__ = [
    "normalize_key",
    "Summary",
    "summarize",
    "AggregateEntry",
    "rank_key",
    "aggregate",
    "top_n",
    "CategoryShare",
    "resolve_name",
    "count_by",
    "percentage_breakdown",
    "top_names",
    "count_by_day",
]
