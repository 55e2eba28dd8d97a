# FILE: ilmdata/codec.py
"""
Artifact codec: canonical JSON + Brotli.

Every artifact the pipelines write goes through here. The on-disk format is
a bare Brotli stream (no header of our own), so any Brotli decoder can read
an artifact; JSON artifacts are compact UTF-8 JSON inside that stream.

Canonicalization sorts mapping keys recursively before serialization. It
exists only to cluster similar structures for a better compression ratio;
decoding returns whatever was encoded and never re-sorts.

Values that are not plain JSON are rendered as follows and are NOT converted
back on decode:
  - datetime -> ISO-8601 UTC with milliseconds, "Z" suffix
                (naive datetimes are taken as UTC);
  - date     -> "YYYY-MM-DD";
  - tuple    -> JSON array.
Anything else (sets, arbitrary objects, NaN / Infinity) is rejected with
MalformedValueModel.
"""
from __future__ import annotations

import base64
import binascii
import csv
import datetime as _dt
import io
import json
import logging
import os
from typing import Any, Dict, List, Union

import brotli
from prometheus_client import Counter

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]

# Brotli tuned for max ratio on text/JSON.
BROTLI_QUALITY = 11
BROTLI_WINDOW = 24
BROTLI_MODE = brotli.MODE_TEXT


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CodecError(Exception):
    """Base codec error."""


class CorruptArtifact(CodecError):
    """Bytes are not a valid compressed stream (or not UTF-8 inside)."""


class MalformedValueModel(CodecError):
    """Value cannot be serialized to, or parsed from, JSON."""


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

_CODEC_BYTES_IN = Counter(
    "ilm_codec_bytes_in_total",
    "Bytes fed into codec operations",
    labelnames=("op",),
)

_CODEC_BYTES_OUT = Counter(
    "ilm_codec_bytes_out_total",
    "Bytes produced by codec operations",
    labelnames=("op",),
)

_CODEC_ERROR = Counter(
    "ilm_codec_error_total",
    "Codec failures",
    labelnames=("op", "kind"),
)


# ---------------------------------------------------------------------------
# Canonical JSON
# ---------------------------------------------------------------------------


def canonicalize(value: Any) -> Any:
    """
    Recursively sort mapping keys.

    Only dicts are rebuilt; lists/tuples are walked element-wise (order is
    kept, tuples become lists). Everything else is returned unchanged for
    the serializer to render.
    """
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, dict):
        # keys sort as they will appear in JSON (int keys become strings)
        return {k: canonicalize(value[k]) for k in sorted(value.keys(), key=str)}
    return value


def _render_non_json(obj: Any) -> Any:
    if isinstance(obj, _dt.datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=_dt.timezone.utc)
        else:
            obj = obj.astimezone(_dt.timezone.utc)
        ms = obj.microsecond // 1000
        return obj.strftime("%Y-%m-%dT%H:%M:%S") + f".{ms:03d}Z"
    if isinstance(obj, _dt.date):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps_value(value: Any, *, canonical: bool = True) -> str:
    """Serialize `value` to compact JSON text, canonicalized by default."""
    data = canonicalize(value) if canonical else value
    try:
        return json.dumps(
            data,
            ensure_ascii=False,
            separators=(",", ":"),
            allow_nan=False,
            default=_render_non_json,
        )
    except (TypeError, ValueError) as e:
        _CODEC_ERROR.labels("dumps", "value_model").inc()
        raise MalformedValueModel(f"Value cannot be serialized: {e}") from e


def loads_value(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as e:
        _CODEC_ERROR.labels("loads", "value_model").inc()
        raise MalformedValueModel(f"Artifact does not contain valid JSON: {e}") from e


# ---------------------------------------------------------------------------
# Text / value compression
# ---------------------------------------------------------------------------


def compress_text(
    text: str,
    *,
    quality: int = BROTLI_QUALITY,
    window: int = BROTLI_WINDOW,
) -> bytes:
    raw = text.encode("utf-8")
    out = brotli.compress(raw, mode=BROTLI_MODE, quality=quality, lgwin=window)
    _CODEC_BYTES_IN.labels("compress").inc(len(raw))
    _CODEC_BYTES_OUT.labels("compress").inc(len(out))
    return out


def decompress_text(data: bytes) -> str:
    try:
        raw = brotli.decompress(bytes(data))
    except brotli.error as e:
        _CODEC_ERROR.labels("decompress", "corrupt").inc()
        raise CorruptArtifact(f"Not a valid Brotli stream: {e}") from e
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        _CODEC_ERROR.labels("decompress", "corrupt").inc()
        raise CorruptArtifact("Decompressed artifact is not valid UTF-8") from e
    _CODEC_BYTES_IN.labels("decompress").inc(len(data))
    _CODEC_BYTES_OUT.labels("decompress").inc(len(raw))
    return text


def compress_value(
    value: Any,
    canonical: bool = True,
    *,
    quality: int = BROTLI_QUALITY,
    window: int = BROTLI_WINDOW,
) -> bytes:
    return compress_text(dumps_value(value, canonical=canonical), quality=quality, window=window)


def decompress_value(data: bytes) -> Any:
    return loads_value(decompress_text(data))


# ---------------------------------------------------------------------------
# base64url tokens
# ---------------------------------------------------------------------------


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(token: str) -> bytes:
    """
    Decode URL-safe base64 with or without padding.

    The standard alphabet ('+', '/') is accepted too. Characters outside
    both alphabets raise binascii.Error (ValueError).
    """
    s = token.strip().replace("-", "+").replace("_", "/")
    s = s + "=" * (-len(s) % 4)
    return base64.b64decode(s, validate=True)


def compress_value_to_b64url(value: Any, canonical: bool = True) -> str:
    return b64url_encode(compress_value(value, canonical=canonical))


def decompress_value_from_b64url(token: str) -> Any:
    try:
        data = b64url_decode(token)
    except (binascii.Error, ValueError) as e:
        _CODEC_ERROR.labels("b64url", "corrupt").inc()
        raise CorruptArtifact("Token is not valid base64url") from e
    return decompress_value(data)


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def write_artifact(path: PathLike, data: bytes) -> int:
    """
    Write `data` to `path` atomically (temp file + rename).

    Returns the number of bytes written.
    """
    target = os.fspath(path)
    parent = os.path.dirname(target)
    if parent:
        os.makedirs(parent, exist_ok=True)
    tmp = target + ".tmp"
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, target)
    logger.debug("artifact written", extra={"artifact": os.path.basename(target), "bytes_out": len(data)})
    return len(data)


def read_artifact(path: PathLike) -> bytes:
    with open(os.fspath(path), "rb") as f:
        return f.read()


def decompress_value_file(path: PathLike) -> Any:
    return decompress_value(read_artifact(path))


def parse_csv_text(text: str) -> List[Dict[str, str]]:
    """
    Parse CSV with a header row.

    Cells and header names are trimmed, blank lines skipped, short rows
    padded with "" and surplus cells dropped.
    """
    reader = csv.reader(io.StringIO(text))
    header: List[str] = []
    rows: List[Dict[str, str]] = []
    for cells in reader:
        if not cells or all(not c.strip() for c in cells):
            continue
        if not header:
            header = [c.strip() for c in cells]
            continue
        values = [c.strip() for c in cells]
        if len(values) < len(header):
            values.extend([""] * (len(header) - len(values)))
        rows.append(dict(zip(header, values)))
    return rows


def csv_header(text: str) -> List[str]:
    for cells in csv.reader(io.StringIO(text)):
        if cells and any(c.strip() for c in cells):
            return [c.strip() for c in cells]
    return []


def load_compressed_csv(path: PathLike) -> List[Dict[str, str]]:
    return parse_csv_text(decompress_text(read_artifact(path)))


__all__ = [
    "BROTLI_QUALITY",
    "BROTLI_WINDOW",
    "CodecError",
    "CorruptArtifact",
    "MalformedValueModel",
    "canonicalize",
    "dumps_value",
    "loads_value",
    "compress_text",
    "decompress_text",
    "compress_value",
    "decompress_value",
    "b64url_encode",
    "b64url_decode",
    "compress_value_to_b64url",
    "decompress_value_from_b64url",
    "write_artifact",
    "read_artifact",
    "decompress_value_file",
    "parse_csv_text",
    "csv_header",
    "load_compressed_csv",
]
