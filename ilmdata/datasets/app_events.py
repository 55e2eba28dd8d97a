# FILE: ilmdata/datasets/app_events.py
"""
In-app usage events for the BlackBerry 10 apps.

The raw export has one row per (user, event, context) with a count. Event
names and free-text contexts are dictionary-encoded; numeric contexts stay
inline. Per user, AppLaunch/AppClose pairs collapse into session-duration
events, other events sharing an id and context are merged, and each app
gets one CSV in which repeated user and event ids are left blank.

Context strings are published as an id -> text lookup. Coordinates in them
are truncated to three decimals and anything the PII heuristic flags is
encrypted behind the redaction prefix.
"""
from __future__ import annotations

import math
import os
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..codec import (
    PathLike,
    compress_text,
    compress_value,
    decompress_text,
    decompress_value_file,
    dumps_value,
    loads_value,
    read_artifact,
    write_artifact,
)
from ..config import get_settings
from ..crypto import TokenCipher, secret_from_env
from ..dictionary import Dictionary, build_dictionary
from ..logging import get_logger
from ..redaction import redact_values, restore_values
from ..utils import parse_count
from .tabular import artifact_stem, csv_text, parse_checked_csv, parse_csv_text, read_text

EVENT_COLUMNS = ("user_id", "event", "context", "count", "app")
CSV_COLUMNS = ("user", "id", "context", "contextId", "count")

LAUNCH_EVENT = "AppLaunch"
CLOSE_EVENT = "AppClose"
SESSION_EVENT = "SessionTotal"
MAX_SESSION_SECONDS = 24 * 3600

EVENTS_ARTIFACT = "events.json"
CONTEXTS_ARTIFACT = "contexts.json"

_HTML_MARKERS = ("<html", "<HTML")
_DECIMAL_RE = re.compile(r"-?\d+\.\d+")

Number = Any


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def truncate3(value: float) -> Number:
    """Floor to three decimals; whole results come back as int."""
    out = math.floor(value * 1000) / 1000
    return int(out) if out.is_integer() else out


def truncate_coordinates(text: str) -> str:
    """Truncate every decimal number inside `text` to three places."""
    return _DECIMAL_RE.sub(lambda m: str(truncate3(float(m.group(0)))), text)


def parse_context_number(text: str) -> Optional[Number]:
    """Plain numeric literal or None; separators make it text."""
    try:
        return int(text)
    except ValueError:
        pass
    try:
        value = float(text)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _user_sort_key(user: str) -> Tuple[int, Any]:
    return (0, int(user)) if user.isascii() and user.isdigit() else (1, user)


def _user_value(user: str) -> Any:
    n = parse_context_number(user)
    return user if n is None else n


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawAppEvent:
    """One export row. A context is either a number or a text, never both."""

    user_id: str
    event: str
    app: str
    count: int
    value: Optional[Number] = None
    text: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Optional["RawAppEvent"]:
        user = str(row.get("user_id") or "").strip()
        event = str(row.get("event") or "").strip()
        app = str(row.get("app") or "").strip()
        if not user or not event or not app:
            return None
        raw_context = str(row.get("context") or "").strip()
        value = parse_context_number(raw_context) if raw_context else None
        text = None
        # markup dumps are not contexts
        if raw_context and value is None and not any(m in raw_context for m in _HTML_MARKERS):
            text = raw_context
        return cls(user_id=user, event=event, app=app, count=parse_count(row.get("count")), value=value, text=text)


@dataclass
class EncodedEvent:
    id: int
    count: int
    context: Optional[Number] = None
    context_id: Optional[int] = None


@dataclass(frozen=True)
class AppEvent:
    """A decoded event as the dashboard reads it."""

    event: Optional[str]
    count: int
    user: Any
    context: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def condense_user_events(
    events: Sequence[EncodedEvent],
    launch_id: Optional[int],
    close_id: Optional[int],
) -> List[EncodedEvent]:
    """
    Collapse one user's events, in export order.

    A launch opens a window (a later launch replaces it) and the next close
    ends it; closes without an open window are discarded. Each pair becomes
    a launch-id event whose context is the duration in whole seconds, kept
    only when it is under a day. Other events with the same id and context
    are merged by summing counts; numeric contexts are truncated first.
    """
    merged: Dict[Tuple[int, Optional[int], Any], EncodedEvent] = {}
    out: List[EncodedEvent] = []
    pairs: List[Tuple[Number, Number]] = []
    opened: Optional[Number] = None

    for event in events:
        if launch_id is not None and event.id == launch_id:
            opened = event.context
        elif close_id is not None and event.id == close_id:
            if opened is not None and event.context is not None:
                pairs.append((opened, event.context))
            opened = None
        else:
            context = truncate3(float(event.context)) if event.context else event.context
            key = (event.id, event.context_id, context)
            seen = merged.get(key)
            if seen is not None:
                seen.count += event.count
                continue
            kept = EncodedEvent(id=event.id, count=event.count, context=context, context_id=event.context_id)
            merged[key] = kept
            out.append(kept)

    for start, end in pairs:
        seconds = math.floor((end - start) / 1000)
        if 0 <= seconds < MAX_SESSION_SECONDS:
            out.append(EncodedEvent(id=launch_id, count=1, context=seconds))  # type: ignore[arg-type]
    return out


def _csv_rows(user_events: Mapping[str, List[EncodedEvent]], omit_repeated: bool) -> List[Tuple[Any, ...]]:
    rows: List[Tuple[Any, ...]] = []
    for user in sorted(user_events, key=_user_sort_key):
        events = sorted(user_events[user], key=lambda e: e.id)
        for i, e in enumerate(events):
            rows.append(
                (
                    user if not omit_repeated or i == 0 else "",
                    e.id if not omit_repeated or i == 0 or e.id != events[i - 1].id else "",
                    e.context,
                    e.context_id,
                    e.count,
                )
            )
    return rows


# ---------------------------------------------------------------------------
# Optimizer (write side)
# ---------------------------------------------------------------------------


def _data_dir(data_dir: Optional[PathLike]) -> str:
    return os.fspath(data_dir) if data_dir is not None else get_settings().dataset_dir("bb10", "analytics")


def event_lookup(events: Dictionary) -> Dict[str, str]:
    """id -> event name, with the launch id renamed to the session total and the close id removed."""
    lookup = events.inverse_json()
    launch_id = events.id_for(LAUNCH_EVENT)
    close_id = events.id_for(CLOSE_EVENT)
    if launch_id is not None:
        lookup[str(launch_id)] = SESSION_EVENT
    if close_id is not None:
        lookup.pop(str(close_id), None)
    return lookup


def optimize_app_events(
    path: PathLike,
    out_dir: Optional[PathLike],
    cipher: TokenCipher,
    *,
    omit_repeated: bool = True,
    compress: bool = True,
) -> Dict[str, int]:
    """
    Write the per-app event CSVs plus the event and context lookups.

    Artifacts under out_dir: `<app>.csv.br`, `events.json` and
    `contexts.json.br` (`.csv` / `contexts.json` with compress=False).
    Returns the CSV rows written per app.
    """
    logger = get_logger(__name__)
    settings = get_settings()
    target = _data_dir(out_dir)
    source = os.fspath(path)

    rows = parse_checked_csv(read_text(path), EVENT_COLUMNS, source=source)
    raw = [e for e in (RawAppEvent.from_row(r) for r in rows) if e is not None]

    events = build_dictionary(r.event for r in raw)
    contexts = build_dictionary(r.text for r in raw if r.text is not None)
    launch_id = events.id_for(LAUNCH_EVENT)
    close_id = events.id_for(CLOSE_EVENT)

    by_app: Dict[str, Dict[str, List[EncodedEvent]]] = {}
    for r in raw:
        encoded = EncodedEvent(
            id=events.id_for(r.event),  # type: ignore[arg-type]
            count=r.count,
            context=r.value,
            context_id=contexts.id_for(r.text) if r.text is not None else None,
        )
        by_app.setdefault(r.app, {}).setdefault(r.user_id, []).append(encoded)
    stems = {app: artifact_stem(app) for app in by_app}

    written: Dict[str, int] = {}
    bytes_out = 0
    for app, user_events in by_app.items():
        condensed = {user: condense_user_events(evts, launch_id, close_id) for user, evts in user_events.items()}
        csv_rows = _csv_rows(condensed, omit_repeated)
        body = csv_text(CSV_COLUMNS, csv_rows)
        if compress:
            data = compress_text(body, quality=settings.brotli_quality, window=settings.brotli_window)
            name = f"{stems[app]}.csv.br"
        else:
            data = body.encode("utf-8")
            name = f"{stems[app]}.csv"
        bytes_out += write_artifact(os.path.join(target, name), data)
        written[app] = len(csv_rows)

    context_lookup = {str(ident): truncate_coordinates(text) for ident, text in contexts.inverse.items()}
    redacted = redact_values(context_lookup, cipher, prefix=settings.redacted_prefix)

    bytes_out += write_artifact(
        os.path.join(target, EVENTS_ARTIFACT),
        dumps_value(event_lookup(events), canonical=False).encode("utf-8"),
    )
    if compress:
        context_data = compress_value(
            context_lookup,
            canonical=settings.canonical_json,
            quality=settings.brotli_quality,
            window=settings.brotli_window,
        )
        context_name = CONTEXTS_ARTIFACT + ".br"
    else:
        context_data = dumps_value(context_lookup, canonical=settings.canonical_json).encode("utf-8")
        context_name = CONTEXTS_ARTIFACT
    bytes_out += write_artifact(os.path.join(target, context_name), context_data)

    logger.info(
        "app events optimized",
        extra={
            "dataset": "app_events",
            "rows_in": len(rows),
            "rows_out": sum(written.values()),
            "rows_dropped": len(rows) - len(raw),
            "bytes_out": bytes_out,
            "redacted": redacted,
        },
    )
    return written


# ---------------------------------------------------------------------------
# Loader (read side)
# ---------------------------------------------------------------------------


def _load_contexts(base: str) -> Dict[str, str]:
    compressed = os.path.join(base, CONTEXTS_ARTIFACT + ".br")
    if os.path.exists(compressed):
        doc = decompress_value_file(compressed)
    else:
        doc = loads_value(read_artifact(os.path.join(base, CONTEXTS_ARTIFACT)).decode("utf-8"))
    return {str(k): v for k, v in doc.items()}


def _load_app_csv(base: str, stem: str) -> List[Dict[str, str]]:
    compressed = os.path.join(base, f"{stem}.csv.br")
    if os.path.exists(compressed):
        return parse_csv_text(decompress_text(read_artifact(compressed)))
    return parse_csv_text(read_artifact(os.path.join(base, f"{stem}.csv")).decode("utf-8"))


def load_app_events(
    app_name: str,
    data_dir: Optional[PathLike] = None,
    secret: Optional[str] = None,
) -> List[AppEvent]:
    """
    Decode one app's optimized events.

    Blank user and id cells repeat the previous row's. Text contexts are
    looked up by contextId; redacted ones are decrypted when a secret
    (argument, else the environment) is available and stay prefixed
    otherwise.
    """
    stem = artifact_stem(app_name)
    base = _data_dir(data_dir)
    prefix = get_settings().redacted_prefix

    contexts = _load_contexts(base)
    material = secret if secret and secret.strip() else secret_from_env()
    restore_values(contexts, TokenCipher.from_secret(material) if material else None, prefix=prefix)
    names = loads_value(read_artifact(os.path.join(base, EVENTS_ARTIFACT)).decode("utf-8"))

    out: List[AppEvent] = []
    last_user: Any = None
    last_id = ""
    for row in _load_app_csv(base, stem):
        if row.get("user"):
            last_user = _user_value(row["user"])
        if row.get("id"):
            last_id = row["id"]
        context: Any = None
        context_id = row.get("contextId", "")
        if context_id and context_id in contexts:
            context = contexts[context_id]
        elif row.get("context"):
            context = parse_context_number(row["context"])
        out.append(AppEvent(event=names.get(last_id), count=parse_count(row.get("count")), user=last_user, context=context))
    return out


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def filter_app_events(
    events: Iterable[AppEvent],
    *,
    user: Any = None,
    event: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[AppEvent]:
    out = [
        e
        for e in events
        if (user is None or e.user == user) and (event is None or e.event == event)
    ]
    if limit is not None and limit > 0:
        out = out[:limit]
    return out


@dataclass(frozen=True)
class EventUsage:
    event: str
    total_count: int
    unique_users: int
    average_count_per_user: float
    contexts: List[Tuple[Any, int]] = field(default_factory=list)


@dataclass(frozen=True)
class UserUsage:
    user: Any
    total_events: int
    unique_event_types: int
    average_events_per_type: float


@dataclass(frozen=True)
class AppEventStats:
    total_events: int
    total_users: int
    total_event_types: int
    average_events_per_user: float
    average_session_seconds: float
    events: List[EventUsage] = field(default_factory=list)
    users: List[UserUsage] = field(default_factory=list)
    top_events: List[EventUsage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _key(value: Any) -> Tuple[int, Any]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


def calculate_app_event_stats(
    events: Sequence[AppEvent],
    *,
    top_users: int = 100,
    top_events: int = 20,
) -> AppEventStats:
    """
    Usage totals per event and per user, weighted by count.

    The average session length only counts positive session totals.
    """
    per_event: Dict[str, Dict[str, Any]] = {}
    per_user: Dict[Any, Dict[str, Any]] = {}
    users = set()
    total = 0
    session_sum = 0
    session_count = 0

    for e in events:
        name = e.event or ""
        total += e.count
        users.add(e.user)

        stat = per_event.setdefault(name, {"count": 0, "users": set(), "contexts": {}})
        stat["count"] += e.count
        stat["users"].add(e.user)
        if e.context is not None:
            ctx = str(e.context)
            stat["contexts"][ctx] = stat["contexts"].get(ctx, 0) + e.count

        if name == SESSION_EVENT and isinstance(e.context, (int, float)) and e.context > 0:
            session_sum += e.context * e.count
            session_count += e.count

        u = per_user.setdefault(e.user, {"count": 0, "types": set()})
        u["count"] += e.count
        u["types"].add(name)

    event_rows = [
        EventUsage(
            event=name,
            total_count=s["count"],
            unique_users=len(s["users"]),
            average_count_per_user=s["count"] / len(s["users"]),
            contexts=sorted(s["contexts"].items(), key=lambda kv: (-kv[1], kv[0])),
        )
        for name, s in per_event.items()
    ]
    event_rows.sort(key=lambda r: (-r.total_count, r.event))

    user_rows = [
        UserUsage(
            user=user,
            total_events=s["count"],
            unique_event_types=len(s["types"]),
            average_events_per_type=s["count"] / len(s["types"]),
        )
        for user, s in per_user.items()
    ]
    user_rows.sort(key=lambda r: (-r.total_events, _key(r.user)))

    return AppEventStats(
        total_events=total,
        total_users=len(users),
        total_event_types=len(per_event),
        average_events_per_user=total / len(users) if users else 0.0,
        average_session_seconds=session_sum / session_count if session_count else 0.0,
        events=event_rows,
        users=user_rows[: max(top_users, 0)],
        top_events=event_rows[: max(top_events, 0)],
    )


__all__ = [
    "EVENT_COLUMNS",
    "CSV_COLUMNS",
    "SESSION_EVENT",
    "RawAppEvent",
    "EncodedEvent",
    "AppEvent",
    "truncate3",
    "truncate_coordinates",
    "parse_context_number",
    "condense_user_events",
    "event_lookup",
    "optimize_app_events",
    "load_app_events",
    "filter_app_events",
    "EventUsage",
    "UserUsage",
    "AppEventStats",
    "calculate_app_event_stats",
]
