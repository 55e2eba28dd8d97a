# FILE: ilmdata/utils.py
from __future__ import annotations

import datetime as _dt
import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Literal, Optional

# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

ColumnType = Literal["string", "number", "date"]

_NUMERIC_RE = re.compile(r"^-?\d+(?:\.\d+)?$", re.ASCII)
_NUMERIC_NOISE_RE = re.compile(r"[,_\s]")
_PLAIN_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$", re.ASCII)

_TWO_PLACES = Decimal("0.01")


def is_finite_number(value: Any) -> bool:
    """
    Return True if `value` is an int/float and is finite (not NaN / +/-inf).

    bool is rejected here: a flag is never a measurement.
    """
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        try:
            return math.isfinite(float(value))
        except Exception:
            return False
    return False


def safe_float(value: Any, default: float = 0.0) -> float:
    """
    Convert `value` to a finite float, falling back to `default` if needed.

    This function never raises.
    """
    if is_finite_number(value):
        return float(value)
    return float(default)


def round2(value: float) -> float:
    """
    Round half away from zero to two decimal places.

    Built-in round() uses banker's rounding, which would make 0.125 -> 0.12;
    leaderboards and percentage tables expect 0.13.
    """
    if not is_finite_number(value):
        return 0.0
    try:
        q = Decimal(repr(float(value))).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return 0.0
    return float(q)


def parse_count(value: Any) -> int:
    """
    Parse a non-fractional count column.

    Accepts ints, finite floats (truncated) and strings with a leading
    integer ("12", " 7 ", "3 blocks"). Anything else is 0.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        m = re.match(r"\s*([-+]?\d+)", value)
        return int(m.group(1)) if m else 0
    return 0


def is_numeric(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(float(value))
    if isinstance(value, str):
        return bool(_NUMERIC_RE.match(_NUMERIC_NOISE_RE.sub("", value.strip())))
    return False


def try_parse_number(value: Any) -> Optional[float | int]:
    """
    Parse "1,234", "1_000", " 12.5 " style cells.

    Integers stay ints so they serialize without a trailing ".0".
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(float(value)) else None
    if isinstance(value, str):
        cleaned = _NUMERIC_NOISE_RE.sub("", value.strip())
        if not _NUMERIC_RE.match(cleaned):
            return None
        if "." in cleaned:
            return float(cleaned)
        return int(cleaned)
    return None


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------


def _as_utc(d: _dt.datetime) -> _dt.datetime:
    if d.tzinfo is None:
        return d.replace(tzinfo=_dt.timezone.utc)
    return d.astimezone(_dt.timezone.utc)


def to_datetime(value: Any) -> Optional[_dt.datetime]:
    """
    Parse ISO-8601 strings ("2024-01-02", "2024-01-02T03:04:05Z",
    "2024-01-02 03:04:05.123+02:00") into aware UTC datetimes.

    Naive values are taken as UTC. Returns None for anything unparseable.
    """
    if isinstance(value, _dt.datetime):
        return _as_utc(value)
    if isinstance(value, _dt.date):
        return _dt.datetime(value.year, value.month, value.day, tzinfo=_dt.timezone.utc)
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    if _PLAIN_DATE_RE.match(s):
        s = s + "T00:00:00"
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        return _as_utc(_dt.datetime.fromisoformat(s))
    except ValueError:
        return None


def to_epoch_seconds(value: Any) -> Optional[int]:
    """Floor a timestamp cell to integer seconds since the epoch."""
    if is_finite_number(value):
        return int(math.floor(float(value)))
    d = to_datetime(value)
    if d is None:
        return None
    return int(math.floor(d.timestamp()))


def iso_day(epoch_seconds: int) -> str:
    return _dt.datetime.fromtimestamp(epoch_seconds, tz=_dt.timezone.utc).strftime("%Y-%m-%d")


def infer_type(values: Iterable[Any]) -> ColumnType:
    """
    Guess a column type from its cells, ignoring blanks.

    Dates are accepted at a lower ratio than numbers because date columns
    in the exports tend to be sparse.
    """
    numbers = dates = total = 0
    for v in values:
        if v is None or v == "":
            continue
        total += 1
        if is_numeric(v):
            numbers += 1
        elif to_datetime(v) is not None:
            dates += 1
    denom = max(total, 1)
    r_num = numbers / denom
    r_date = dates / denom
    if r_date >= 0.3 and r_date >= r_num:
        return "date"
    if r_num >= 0.7:
        return "number"
    return "string"


__all__ = [
    "ColumnType",
    "is_finite_number",
    "safe_float",
    "round2",
    "parse_count",
    "is_numeric",
    "try_parse_number",
    "to_datetime",
    "to_epoch_seconds",
    "iso_day",
    "infer_type",
]
