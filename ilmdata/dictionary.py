# FILE: ilmdata/dictionary.py
"""
Dictionary encoding for categorical columns.

Ids are a pure function of the distinct-value set: values are trimmed,
blanks dropped, the distinct set sorted by code point, and ids assigned
1..n in that order. Input order and batch boundaries never affect the
result, so the same exports always produce the same dictionary files.

DictionaryNormalizer does the multi-file version of this in two passes:
observe() every batch first, freeze() to assign ids, then normalize() each
batch again to translate rows.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from prometheus_client import Counter

from .utils import to_epoch_seconds

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]

_ROWS_DROPPED = Counter(
    "ilm_normalizer_rows_dropped_total",
    "Rows excluded from normalized output",
    labelnames=("reason",),
)


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def invert_mapping(mapping: Mapping[Any, Any]) -> Dict[Any, Any]:
    """Exact inverse of a one-to-one mapping; duplicate values are an error."""
    out: Dict[Any, Any] = {}
    for k, v in mapping.items():
        if v in out:
            raise ValueError(f"Mapping is not one-to-one: {v!r} appears twice")
        out[v] = k
    return out


@dataclass(frozen=True)
class Dictionary:
    """Immutable value <-> id mapping; ids are dense and start at 1."""

    forward: Mapping[str, int]
    inverse: Mapping[int, str] = field(init=False)

    def __post_init__(self) -> None:
        fwd = dict(self.forward)
        object.__setattr__(self, "forward", MappingProxyType(fwd))
        object.__setattr__(self, "inverse", MappingProxyType(invert_mapping(fwd)))

    def __len__(self) -> int:
        return len(self.forward)

    def __contains__(self, value: object) -> bool:
        return isinstance(value, str) and value.strip() in self.forward

    def id_for(self, value: Any) -> Optional[int]:
        return self.forward.get(_clean(value))

    def value_for(self, ident: Any) -> Optional[str]:
        try:
            return self.inverse.get(int(ident))
        except (TypeError, ValueError):
            return None

    def values(self) -> List[str]:
        return list(self.forward.keys())

    def to_json(self) -> Dict[str, int]:
        return dict(self.forward)

    def inverse_json(self) -> Dict[str, str]:
        # JSON object keys are strings
        return {str(k): v for k, v in self.inverse.items()}

    @classmethod
    def from_forward(cls, mapping: Mapping[str, Any]) -> "Dictionary":
        """
        Rebuild from a persisted forward map.

        Ids must be exactly 1..n; anything else was not produced by
        build_dictionary and is rejected.
        """
        fwd = {str(k): int(v) for k, v in mapping.items()}
        if sorted(fwd.values()) != list(range(1, len(fwd) + 1)):
            raise ValueError("Dictionary ids must be dense and start at 1")
        return cls(forward=fwd)

    @classmethod
    def from_inverse(cls, mapping: Mapping[Any, Any]) -> "Dictionary":
        return cls.from_forward({str(v): int(k) for k, v in mapping.items()})


def distinct_values(values: Iterable[Any]) -> Set[str]:
    out: Set[str] = set()
    for v in values:
        s = _clean(v)
        if s:
            out.add(s)
    return out


def dictionary_from_set(distinct: Iterable[str]) -> Dictionary:
    ordered = sorted(distinct)
    return Dictionary(forward={v: i for i, v in enumerate(ordered, start=1)})


def build_dictionary(values: Iterable[Any]) -> Dictionary:
    return dictionary_from_set(distinct_values(values))


# ---------------------------------------------------------------------------
# Multi-column, multi-batch normalizer
# ---------------------------------------------------------------------------


class DictionaryNormalizer:
    """
    Two-pass normalizer over rows keyed by column name.

    Args:
      fields: mapping of input column -> output column for categorical
              values that get dictionary ids.
      required: input columns that must be non-blank for a row to be kept.
                Defaults to every categorical column.
      timestamp_fields: mapping of input column -> output column converted
                        to integer epoch seconds. A row whose timestamp
                        cannot be parsed is dropped.
      passthrough: mapping of input column -> output column copied as
                   trimmed text.
    """

    def __init__(
        self,
        fields: Mapping[str, str],
        *,
        required: Optional[Sequence[str]] = None,
        timestamp_fields: Optional[Mapping[str, str]] = None,
        passthrough: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._fields = dict(fields)
        self._required = tuple(required) if required is not None else tuple(self._fields)
        self._timestamps = dict(timestamp_fields or {})
        self._passthrough = dict(passthrough or {})
        self._seen: Dict[str, Set[str]] = {name: set() for name in self._fields}
        self._dictionaries: Optional[Dict[str, Dictionary]] = None

    @property
    def frozen(self) -> bool:
        return self._dictionaries is not None

    def observe(self, rows: Iterable[Row]) -> int:
        """First pass: collect distinct values. Returns the rows seen."""
        if self._dictionaries is not None:
            raise RuntimeError("DictionaryNormalizer is frozen; start a new run")
        n = 0
        for row in rows:
            n += 1
            for name, seen in self._seen.items():
                s = _clean(row.get(name))
                if s:
                    seen.add(s)
        return n

    def freeze(self) -> Dict[str, Dictionary]:
        if self._dictionaries is None:
            self._dictionaries = {
                name: dictionary_from_set(seen) for name, seen in self._seen.items()
            }
        return dict(self._dictionaries)

    @property
    def dictionaries(self) -> Dict[str, Dictionary]:
        return self.freeze()

    def _required_present(self, row: Row) -> bool:
        return all(_clean(row.get(name)) for name in self._required)

    def normalize_row(self, row: Row) -> Optional[Dict[str, Any]]:
        dictionaries = self._dictionaries
        if dictionaries is None:
            raise RuntimeError("observe() and freeze() must run before normalize()")
        if not self._required_present(row):
            _ROWS_DROPPED.labels("blank_required").inc()
            return None

        out: Dict[str, Any] = {}
        for src, dst in self._passthrough.items():
            out[dst] = _clean(row.get(src))
        for src, dst in self._fields.items():
            out[dst] = dictionaries[src].id_for(row.get(src))
        for src, dst in self._timestamps.items():
            ts = to_epoch_seconds(row.get(src))
            if ts is None:
                _ROWS_DROPPED.labels("bad_timestamp").inc()
                return None
            out[dst] = ts
        return out

    def normalize(self, rows: Iterable[Row]) -> Iterator[Dict[str, Any]]:
        """Second pass: translate rows, silently dropping incomplete ones."""
        dropped = 0
        for row in rows:
            rec = self.normalize_row(row)
            if rec is None:
                dropped += 1
                continue
            yield rec
        if dropped:
            logger.debug("rows dropped during normalization", extra={"rows_dropped": dropped})


def normalize_batches(
    batches: Sequence[Sequence[Row]],
    fields: Mapping[str, str],
    **kwargs: Any,
) -> Tuple[List[Dict[str, Any]], Dict[str, Dictionary]]:
    """Convenience: observe every batch, then normalize every batch."""
    normalizer = DictionaryNormalizer(fields, **kwargs)
    for batch in batches:
        normalizer.observe(batch)
    dictionaries = normalizer.freeze()
    records: List[Dict[str, Any]] = []
    for batch in batches:
        records.extend(normalizer.normalize(batch))
    return records, dictionaries


__all__ = [
    "Dictionary",
    "DictionaryNormalizer",
    "invert_mapping",
    "distinct_values",
    "dictionary_from_set",
    "build_dictionary",
    "normalize_batches",
]
