# FILE: ilmdata/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import hashlib
import json
import logging
import os
import sys
import traceback
from typing import Any, Dict, Optional, Set

from .pii import has_pii

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("ILM_LOG_SCHEMA", "ilmdata.log.v1")
_LOG_SERVICE = os.environ.get("ILM_SERVICE", "ilmdata")
_LOG_VERSION = os.environ.get("ILM_VERSION", "0.0.0")
_LOG_ENV = os.environ.get("ILM_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = os.environ.get(
    "ILM_INSTANCE", os.uname().nodename if hasattr(os, "uname") else "unknown"
)

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = int(os.environ.get("ILM_LOG_MAX_FIELD", "8192"))
    _MAX_FIELD = max(512, _MAX_FIELD)
except Exception:
    _MAX_FIELD = 8192

_INCLUDE_STACK = os.environ.get("ILM_LOG_INCLUDE_STACK", "1") == "1"
_LOG_STRIP_PII = os.environ.get("ILM_LOG_STRIP_PII", "1") == "1"

# Keys whose values are always masked (case-insensitive)
_DEFAULT_REDACT = {
    "secret",
    "encryption_secret",
    "ilm_encryption_secret",
    "key",
    "content_key",
    "token",
    "password",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("ILM_LOG_REDACT", "").split(",")
    if k.strip()
} or _DEFAULT_REDACT

# Pipeline fields lifted into the envelope
_ENVELOPE_FIELDS = (
    "dataset",
    "artifact",
    "rows_in",
    "rows_out",
    "rows_dropped",
    "bytes_in",
    "bytes_out",
    "redacted",
)

_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "ilm_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "")
    return f"{base}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _finite_float(x: Any) -> Optional[float]:
    try:
        xf = float(x)
        if xf != xf or xf == float("inf") or xf == float("-inf"):
            return None
        return xf
    except Exception:
        return None


def _redact_key(k: str) -> bool:
    return k.lower() in _REDACT_KEYS


def pii_tag(value: str, *, label: str = "pii") -> str:
    """Non-reversible stand-in for a PII-bearing string."""
    digest = hashlib.blake2s(value.encode("utf-8"), digest_size=8).hexdigest()
    return f"{label}-h-{digest}"


def _scrub_value(k: str, v: Any) -> Any:
    if _redact_key(k):
        return "***"
    if isinstance(v, str):
        if _LOG_STRIP_PII and has_pii(v):
            return pii_tag(v)
        return _truncate(v)
    if isinstance(v, float):
        return _finite_float(v)
    if isinstance(v, dict):
        return scrub_dict(v)
    if isinstance(v, (list, tuple)):
        return [_scrub_value(k, x) for x in v]
    return v


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """
    Mask secret-like keys and PII-bearing strings in a dict.

    Keys listed in `_REDACT_KEYS` get "***"; strings matching has_pii are
    replaced by a digest tag. Nested containers are scrubbed recursively.
    """
    return {str(k): _scrub_value(str(k), v) for k, v in (d or {}).items()}


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Dict[str, Any]:
    raw: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        raw[k] = v
    return scrub_dict(raw)


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, version, env, instance
      - ts, lvl, logger, msg
      - pipeline fields: dataset, artifact, rows_in, rows_out, rows_dropped,
        bytes_in, bytes_out, redacted
    Any other record extras land in "meta", scrubbed.
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        msg = str(record.getMessage())
        if _LOG_STRIP_PII and has_pii(msg):
            msg = pii_tag(msg, label="msg")

        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": msg,
        }

        # bound context wins over record extras
        for name in _ENVELOPE_FIELDS:
            v = ctx[name] if name in ctx else getattr(record, name, None)
            if v is None:
                continue
            evt[name] = _scrub_value(name, v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()) | set(_ENVELOPE_FIELDS))
        extra_ctx = {k: v for k, v in ctx.items() if k not in _ENVELOPE_FIELDS}
        if extra_ctx:
            meta.update(scrub_dict(extra_ctx))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """Configure the root logger for JSON output."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)
    return root


_configured = False


def get_logger(name: str = "ilmdata") -> logging.Logger:
    """
    Return a named logger.

    The first call sets up root JSON output from Settings unless log_json is
    off, in which case handlers are left to the caller.
    """
    global _configured
    if not _configured:
        from .config import get_settings

        settings = get_settings()
        if settings.log_json:
            configure_json_logging(level=settings.log_level)
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "JSONFormatter",
    "scrub_dict",
    "pii_tag",
]
