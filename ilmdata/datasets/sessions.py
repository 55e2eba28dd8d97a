# FILE: ilmdata/datasets/sessions.py
"""
Web session analytics.

A raw export is a JSON array of session rows whose `data` and `state`
columns are themselves JSON text. optimize_sessions parses those, encrypts
event payloads that carry links or PII, and writes one compressed value
artifact. load_sessions reverses the redaction when a secret is at hand.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from prometheus_client import Counter

from ..codec import PathLike, compress_value, decompress_value_file, loads_value, write_artifact
from ..config import get_settings
from ..logging import get_logger
from ..crypto import TokenCipher, secret_from_env
from ..pii import has_pii
from ..redaction import redact_field, restore_field
from ..utils import to_epoch_seconds
from .tabular import MissingColumns, read_text, require_columns

SESSION_COLUMNS = ("user_id", "timestamp", "data", "state")
PAYLOAD_FIELD = "c"
EVENT_FIELD = "e"
LENGTH_ONLY_EVENTS = frozenset({"Translate"})

_SESSIONS_DROPPED = Counter(
    "ilm_sessions_dropped_total",
    "Session rows excluded from the optimized artifact",
    labelnames=("reason",),
)


def is_sensitive_payload(value: str) -> bool:
    """Links and anything the PII heuristic flags get encrypted."""
    return "https://" in value or "http://" in value or has_pii(value)


def _json_field(value: Any) -> Any:
    # columns may arrive as JSON text or already decoded
    if isinstance(value, str):
        return loads_value(value) if value.strip() else None
    return value


@dataclass(frozen=True)
class SessionExport:
    """One raw session row."""

    user_id: Any
    timestamp: Any
    events: List[Dict[str, Any]] = field(default_factory=list)
    state: Any = None

    @classmethod
    def from_dict(cls, row: Mapping[str, Any], *, source: str = "") -> "SessionExport":
        require_columns(row.keys(), SESSION_COLUMNS, source=source)
        events = _json_field(row["data"])
        if events is None:
            events = []
        if not isinstance(events, list):
            raise ValueError(f"{source or '<input>'}: session data must be a JSON array")
        return cls(
            user_id=row["user_id"],
            timestamp=row["timestamp"],
            events=[dict(e) for e in events if isinstance(e, dict)],
            state=_json_field(row["state"]),
        )


def optimize_events(
    events: List[Dict[str, Any]],
    cipher: TokenCipher,
    *,
    mark: Optional[str] = None,
) -> int:
    """
    Reduce and redact event payloads in place. Returns the number redacted.

    Length-only events keep just the payload length, so they are reduced
    before the sensitivity check ever sees their text.
    """
    mark = mark or get_settings().redaction_mark
    redacted = 0
    for event in events:
        payload = event.get(PAYLOAD_FIELD)
        if event.get(EVENT_FIELD) in LENGTH_ONLY_EVENTS and payload:
            event[PAYLOAD_FIELD] = str(len(str(payload)))
            continue
        if redact_field(event, PAYLOAD_FIELD, cipher, predicate=is_sensitive_payload, mark=mark):
            redacted += 1
    return redacted


def optimize_sessions(path: PathLike, out_path: PathLike, cipher: TokenCipher) -> int:
    """
    Write the optimized session artifact. Returns the sessions written.

    Output records are {"t": epoch seconds, "user": ..., "events": [...],
    "state": ...}. Rows whose timestamp does not parse are dropped.
    """
    settings = get_settings()
    source = os.fspath(path)
    rows = loads_value(read_text(path))
    if not isinstance(rows, list):
        raise ValueError(f"{source}: expected a JSON array of sessions")

    structured: List[Dict[str, Any]] = []
    redacted = 0
    for row in rows:
        session = SessionExport.from_dict(row, source=source)
        t = to_epoch_seconds(session.timestamp)
        if t is None:
            _SESSIONS_DROPPED.labels("bad_timestamp").inc()
            continue
        events = session.events
        redacted += optimize_events(events, cipher, mark=settings.redaction_mark)
        structured.append({"t": t, "user": session.user_id, "events": events, "state": session.state})

    n = write_artifact(
        out_path,
        compress_value(
            structured,
            canonical=settings.canonical_json,
            quality=settings.brotli_quality,
            window=settings.brotli_window,
        ),
    )
    get_logger(__name__).info(
        "sessions optimized",
        extra={
            "dataset": "sessions",
            "artifact": os.path.basename(os.fspath(out_path)),
            "rows_in": len(rows),
            "rows_out": len(structured),
            "rows_dropped": len(rows) - len(structured),
            "bytes_out": n,
            "redacted": redacted,
        },
    )
    return len(structured)


def load_sessions(path: PathLike, secret: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Load an optimized session artifact.

    With a secret (argument, else the environment) redacted payloads are
    decrypted and unmarked. Without one they stay encrypted and marked.
    """
    mark = get_settings().redaction_mark
    material = secret if secret and secret.strip() else secret_from_env()
    cipher = TokenCipher.from_secret(material) if material else None

    sessions = decompress_value_file(path)
    if not isinstance(sessions, list):
        raise ValueError(f"{os.fspath(path)}: expected a list of sessions")
    for session in sessions:
        for event in session.get("events") or []:
            restore_field(event, PAYLOAD_FIELD, cipher, mark=mark)
    return sessions


__all__ = [
    "MissingColumns",
    "SessionExport",
    "is_sensitive_payload",
    "optimize_events",
    "optimize_sessions",
    "load_sessions",
]
