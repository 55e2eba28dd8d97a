# FILE: ilmdata/datasets/reports.py
"""
Auto-block abuse reports.

Each report says "user U reported address/keyword X, and it has since
blocked N messages". Raw exports key users by email; optimize_reports
swaps emails for dense integer ids and keeps the id -> email table only in
encrypted form.
"""
from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..aggregate import AggregateEntry, normalize_key, rank_key, summarize, top_n
from ..codec import (
    PathLike,
    compress_text,
    compress_value,
    decompress_text,
    decompress_value_file,
    dumps_value,
    read_artifact,
    write_artifact,
)
from ..config import get_settings
from ..logging import get_logger
from ..crypto import TokenCipher
from ..dictionary import Dictionary, build_dictionary
from ..utils import parse_count
from .tabular import csv_text, parse_checked_csv, read_text, require_columns

ADDRESS_COLUMNS = ("user_id", "address", "count")
KEYWORD_COLUMNS = ("user_id", "term", "count")

ADDRESSES_ARTIFACT = "address.csv.br"
KEYWORDS_ARTIFACT = "keywords.json.br"
USERS_ARTIFACT = "user_to_email.json"


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


def _user_id(value: Any) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return str(value if value is not None else "").strip()


@dataclass(frozen=True)
class ReportedAddress:
    user_id: str
    address: str
    count: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Optional["ReportedAddress"]:
        user = _user_id(row.get("user_id"))
        address = str(row.get("address") or "").strip()
        # repeated header lines show up when exports are concatenated
        if not user or user == "user_id" or not address:
            return None
        return cls(user_id=user, address=address, count=parse_count(row.get("count")))


@dataclass(frozen=True)
class ReportedKeyword:
    user_id: str
    term: str
    count: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Optional["ReportedKeyword"]:
        user = _user_id(row.get("user_id"))
        term = str(row.get("term") or "").strip()
        if not user or user == "user_id" or not term:
            return None
        return cls(user_id=user, term=term, count=parse_count(row.get("count")))


def parse_reported_addresses(rows: Iterable[Mapping[str, Any]]) -> List[ReportedAddress]:
    out = []
    for row in rows:
        rec = ReportedAddress.from_row(row)
        if rec is not None:
            out.append(rec)
    return out


def parse_reported_keywords(rows: Iterable[Mapping[str, Any]]) -> List[ReportedKeyword]:
    out = []
    for row in rows:
        rec = ReportedKeyword.from_row(row)
        if rec is not None:
            out.append(rec)
    return out


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AutoBlockSummary:
    total_reports: int
    total_reported_addresses: int
    total_reported_keywords: int
    unique_users: int
    unique_addresses: int
    unique_keywords: int
    total_blocks_from_addresses: int
    total_blocks_from_keywords: int
    total_blocks: int
    zero_block_reports: int


@dataclass(frozen=True)
class TopTarget:
    """Leaderboard row for an address or keyword."""

    value: str
    reports: int
    reporters: int
    blocks: int
    average_blocks_per_report: float

    @classmethod
    def from_entry(cls, entry: AggregateEntry) -> "TopTarget":
        return cls(
            value=entry.label,
            reports=entry.occurrences,
            reporters=entry.reporters,
            blocks=int(entry.measure_sum),
            average_blocks_per_report=entry.average_measure_per_occurrence,
        )


@dataclass(frozen=True)
class TopReporter:
    user_id: str
    reported_addresses: int
    reported_keywords: int
    zero_block_reports: int
    total_reports: int
    blocks_from_addresses: int
    blocks_from_keywords: int
    total_blocks: int


@dataclass(frozen=True)
class AutoBlockStats:
    summary: AutoBlockSummary
    top_addresses: List[TopTarget] = field(default_factory=list)
    top_keywords: List[TopTarget] = field(default_factory=list)
    top_reporters: List[TopReporter] = field(default_factory=list)
    addresses: List[ReportedAddress] = field(default_factory=list)
    keywords: List[ReportedKeyword] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_summary(addresses: List[ReportedAddress], keywords: List[ReportedKeyword]) -> AutoBlockSummary:
    """Totals over both report kinds. Users, addresses and keywords are counted case-insensitively."""
    by_address = summarize(addresses, lambda r: r.count, lambda r: r.user_id)
    by_keyword = summarize(keywords, lambda r: r.count, lambda r: r.user_id)
    users = {normalize_key(r.user_id) for r in addresses} | {normalize_key(r.user_id) for r in keywords}
    blocks_a = int(by_address.measure_sum)
    blocks_k = int(by_keyword.measure_sum)
    return AutoBlockSummary(
        total_reports=by_address.total + by_keyword.total,
        total_reported_addresses=by_address.total,
        total_reported_keywords=by_keyword.total,
        unique_users=len(users),
        unique_addresses=len({normalize_key(r.address) for r in addresses}),
        unique_keywords=len({normalize_key(r.term) for r in keywords}),
        total_blocks_from_addresses=blocks_a,
        total_blocks_from_keywords=blocks_k,
        total_blocks=blocks_a + blocks_k,
        zero_block_reports=by_address.zero_measure + by_keyword.zero_measure,
    )


def _board_size(n: Optional[int]) -> int:
    return get_settings().leaderboard_size if n is None else n


def build_top_addresses(addresses: List[ReportedAddress], n: Optional[int] = None) -> List[TopTarget]:
    entries = top_n(addresses, lambda r: r.address, lambda r: r.count, lambda r: r.user_id, _board_size(n))
    return [TopTarget.from_entry(e) for e in entries]


def build_top_keywords(keywords: List[ReportedKeyword], n: Optional[int] = None) -> List[TopTarget]:
    entries = top_n(keywords, lambda r: r.term, lambda r: r.count, lambda r: r.user_id, _board_size(n))
    return [TopTarget.from_entry(e) for e in entries]


def _reporter_key(user_id: str) -> Any:
    # integer ids order numerically
    return int(user_id) if user_id.isdigit() else user_id


def build_top_reporters(
    addresses: List[ReportedAddress],
    keywords: List[ReportedKeyword],
    n: Optional[int] = None,
) -> List[TopReporter]:
    acc: Dict[str, List[int]] = {}
    labels: Dict[str, str] = {}

    def slot(user_id: str) -> List[int]:
        # same user in any letter case is one reporter, shown by its smallest spelling
        key = normalize_key(user_id)
        if key not in labels or user_id < labels[key]:
            labels[key] = user_id
        return acc.setdefault(key, [0, 0, 0, 0, 0])

    # [addresses, keywords, zero, blocks_a, blocks_k]
    for rec in addresses:
        a = slot(rec.user_id)
        a[0] += 1
        a[3] += rec.count
        if rec.count == 0:
            a[2] += 1
    for rec in keywords:
        a = slot(rec.user_id)
        a[1] += 1
        a[4] += rec.count
        if rec.count == 0:
            a[2] += 1

    reporters = [
        TopReporter(
            user_id=labels[user],
            reported_addresses=a[0],
            reported_keywords=a[1],
            zero_block_reports=a[2],
            total_reports=a[0] + a[1],
            blocks_from_addresses=a[3],
            blocks_from_keywords=a[4],
            total_blocks=a[3] + a[4],
        )
        for user, a in acc.items()
    ]
    reporters.sort(key=lambda r: rank_key(r.total_blocks, r.total_reports, _reporter_key(normalize_key(r.user_id))))
    size = _board_size(n)
    return reporters[: max(size, 0)]


def compute_auto_block_stats(
    addresses: List[ReportedAddress],
    keywords: List[ReportedKeyword],
    n: Optional[int] = None,
) -> AutoBlockStats:
    # raw lists come back busiest first for display
    addresses = sorted(addresses, key=lambda r: (-r.count, r.address))
    keywords = sorted(keywords, key=lambda r: (-r.count, r.term))
    return AutoBlockStats(
        summary=build_summary(addresses, keywords),
        top_addresses=build_top_addresses(addresses, n),
        top_keywords=build_top_keywords(keywords, n),
        top_reporters=build_top_reporters(addresses, keywords, n),
        addresses=addresses,
        keywords=keywords,
    )


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


def _data_dir(data_dir: Optional[PathLike]) -> str:
    return os.fspath(data_dir) if data_dir is not None else get_settings().dataset_dir("auto_block")


def load_auto_block_stats(data_dir: Optional[PathLike] = None) -> AutoBlockStats:
    """Load the optimized artifacts written by optimize_reports and aggregate them."""
    base = _data_dir(data_dir)
    address_path = os.path.join(base, ADDRESSES_ARTIFACT)
    address_rows = parse_checked_csv(
        decompress_text(read_artifact(address_path)), ADDRESS_COLUMNS, source=address_path
    )

    keyword_path = os.path.join(base, KEYWORDS_ARTIFACT)
    keyword_rows = decompress_value_file(keyword_path)
    if not isinstance(keyword_rows, list):
        raise ValueError(f"{keyword_path}: expected a list of keyword reports")
    for row in keyword_rows[:1]:
        require_columns(row.keys(), KEYWORD_COLUMNS, source=keyword_path)

    return compute_auto_block_stats(
        parse_reported_addresses(address_rows),
        parse_reported_keywords(keyword_rows),
    )


def optimize_reports(
    addresses_csv: PathLike,
    keywords_csv: PathLike,
    out_dir: Optional[PathLike],
    cipher: TokenCipher,
) -> Dictionary:
    """
    Turn raw report exports into dashboard artifacts.

    Reporter emails from both files share one dictionary (sorted, ids from
    1). Writes address.csv.br and keywords.json.br keyed by those ids, and
    user_to_email.json mapping id -> encrypted email. Returns the email
    dictionary.
    """
    settings = get_settings()
    target = _data_dir(out_dir)

    raw_addresses = parse_checked_csv(read_text(addresses_csv), ADDRESS_COLUMNS, source=os.fspath(addresses_csv))
    raw_keywords = parse_checked_csv(read_text(keywords_csv), KEYWORD_COLUMNS, source=os.fspath(keywords_csv))
    addresses = parse_reported_addresses(raw_addresses)
    keywords = parse_reported_keywords(raw_keywords)

    users = build_dictionary([r.user_id for r in addresses] + [r.user_id for r in keywords])

    address_rows: List[Tuple[Any, ...]] = [(users.id_for(r.user_id), r.address, r.count) for r in addresses]
    keyword_values = [{"user_id": users.id_for(r.user_id), "term": r.term, "count": r.count} for r in keywords]
    email_by_id = {str(ident): cipher.encrypt(email) for ident, email in users.inverse.items()}

    bytes_out = write_artifact(
        os.path.join(target, ADDRESSES_ARTIFACT),
        compress_text(
            csv_text(ADDRESS_COLUMNS, address_rows),
            quality=settings.brotli_quality,
            window=settings.brotli_window,
        ),
    )
    bytes_out += write_artifact(
        os.path.join(target, KEYWORDS_ARTIFACT),
        compress_value(
            keyword_values,
            canonical=settings.canonical_json,
            quality=settings.brotli_quality,
            window=settings.brotli_window,
        ),
    )
    bytes_out += write_artifact(
        os.path.join(target, USERS_ARTIFACT),
        dumps_value(email_by_id, canonical=False).encode("utf-8"),
    )

    rows_in = len(raw_addresses) + len(raw_keywords)
    rows_out = len(addresses) + len(keywords)
    get_logger(__name__).info(
        "reports optimized",
        extra={
            "dataset": "reports",
            "rows_in": rows_in,
            "rows_out": rows_out,
            "rows_dropped": rows_in - rows_out,
            "bytes_out": bytes_out,
            "redacted": len(email_by_id),
        },
    )
    return users


__all__ = [
    "ReportedAddress",
    "ReportedKeyword",
    "AutoBlockSummary",
    "TopTarget",
    "TopReporter",
    "AutoBlockStats",
    "parse_reported_addresses",
    "parse_reported_keywords",
    "build_summary",
    "build_top_addresses",
    "build_top_keywords",
    "build_top_reporters",
    "compute_auto_block_stats",
    "load_auto_block_stats",
    "optimize_reports",
]
