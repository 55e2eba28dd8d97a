# FILE: ilmdata/datasets/progress.py
"""
Collection progress snapshots.

The raw export has one row per collection per snapshot, mostly repeating
the previous row. Condensing keeps the first snapshot of each collection
whole and afterwards only the columns that changed, each entry stamped
with `t` (epoch seconds).
"""
from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping

from ..codec import PathLike, compress_value, dumps_value, write_artifact
from ..config import get_settings
from ..logging import get_logger
from ..utils import to_epoch_seconds, try_parse_number
from .tabular import csv_text, parse_checked_csv, read_text

COLLECTION_COLUMNS = ("timestamp", "collection")
COMPARISON_KEYS = (
    "collection",
    "covered",
    "reviews",
    "drafts",
    "explained",
    "total_entries",
    "unlinked",
    "verify",
)
_DROPPED_KEYS = ("id", "timestamp", "collection", "total_entries")

PROGRESS_COLUMNS = ("id", "timestamp", "user_id", "surah_id", "verse_id")

Stats = Dict[str, Any]


def _cast(value: Any) -> Any:
    n = try_parse_number(value)
    return value if n is None else n


def _compact(entry: Mapping[str, Any]) -> Stats:
    out = {k: v for k, v in entry.items() if k not in _DROPPED_KEYS and v is not None and v != ""}
    if entry.get("total_entries"):
        out["entries"] = entry["total_entries"]
    out["t"] = entry["t"]
    return out


def _collection_sort_key(key: str) -> Any:
    return (0, int(key), key) if key.isdigit() else (1, 0, key)


def condense_collection_stats(path: PathLike) -> Dict[str, Dict[str, List[Stats]]]:
    """
    Collapse repeated snapshots into per-collection change logs.

    Returns {"stats": {collection_id: [entry, ...]}}. Rows without a
    parseable timestamp are skipped.
    """
    rows = parse_checked_csv(read_text(path), COLLECTION_COLUMNS, source=os.fspath(path))

    history: Dict[str, List[Dict[str, Any]]] = {}
    current: Dict[str, Dict[str, Any]] = {}
    for raw in rows:
        t = to_epoch_seconds(raw.get("timestamp"))
        if t is None:
            continue
        record = {k: _cast(v) for k, v in raw.items()}
        record["t"] = t
        key = str(record["collection"])

        state = current.get(key)
        if state is None:
            history[key] = [record]
            current[key] = dict(record)
            continue

        diff: Dict[str, Any] = {"t": t}
        for name in COMPARISON_KEYS:
            if state.get(name) != record.get(name):
                diff[name] = record.get(name)
                state[name] = record.get(name)
        state["t"] = t
        if len(diff) > 1:
            history[key].append(diff)

    stats = {key: [_compact(e) for e in history[key]] for key in sorted(history, key=_collection_sort_key)}
    return {"stats": stats}


def merge_collection_stats(
    previous: Mapping[str, Any],
    fresh: Mapping[str, Any],
) -> Dict[str, Dict[str, List[Stats]]]:
    """
    Append fresh change logs to previously published ones.

    Entries are re-sorted by `t` (stable, so equal stamps keep prior order).
    Collections absent from `previous` are skipped with a warning; only
    known collections are extended.
    """
    merged: Dict[str, List[Stats]] = {k: list(v) for k, v in (previous.get("stats") or {}).items()}
    for key, entries in (fresh.get("stats") or {}).items():
        key = str(key)
        if key not in merged:
            get_logger(__name__).warning("collection not found in previous stats", extra={"dataset": "progress", "collection": key})
            continue
        merged[key] = sorted(merged[key] + list(entries), key=lambda e: e.get("t", 0))
    return {"stats": merged}


def write_collection_stats(stats: Mapping[str, Any], path: PathLike) -> int:
    """Write stats as Brotli-compressed JSON for *.br paths, plain JSON otherwise."""
    settings = get_settings()
    target = os.fspath(path)
    if target.endswith(".br"):
        data = compress_value(
            stats,
            canonical=settings.canonical_json,
            quality=settings.brotli_quality,
            window=settings.brotli_window,
        )
    else:
        data = dumps_value(stats, canonical=settings.canonical_json).encode("utf-8")
    n = write_artifact(target, data)
    get_logger(__name__).info("collection stats written", extra={"dataset": "progress", "artifact": os.path.basename(target), "bytes_out": n})
    return n


def optimize_reading_progress(path: PathLike, out_path: PathLike) -> int:
    """
    Rewrite a reading progress export as user,timestamp,surah,verse.

    Millisecond timestamps become seconds; rows sort by user, time, surah,
    verse. Returns the rows written.
    """
    rows = parse_checked_csv(read_text(path), PROGRESS_COLUMNS, source=os.fspath(path))
    out = []
    for r in rows:
        ms = try_parse_number(r["timestamp"])
        user = try_parse_number(r["user_id"])
        surah = try_parse_number(r["surah_id"])
        verse = try_parse_number(r["verse_id"])
        if ms is None or user is None or surah is None or verse is None:
            continue
        out.append((user, int(ms // 1000), surah, verse))
    out.sort()
    n = write_artifact(out_path, csv_text(("user", "timestamp", "surah", "verse"), out).encode("utf-8"))
    get_logger(__name__).info(
        "reading progress optimized",
        extra={
            "dataset": "reading_progress",
            "artifact": os.path.basename(os.fspath(out_path)),
            "rows_in": len(rows),
            "rows_out": len(out),
            "rows_dropped": len(rows) - len(out),
            "bytes_out": n,
        },
    )
    return len(out)


__all__ = [
    "COMPARISON_KEYS",
    "condense_collection_stats",
    "merge_collection_stats",
    "write_collection_stats",
    "optimize_reading_progress",
]
