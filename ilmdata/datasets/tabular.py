# FILE: ilmdata/datasets/tabular.py
from __future__ import annotations

import csv
import io
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..codec import PathLike, csv_header, parse_csv_text
from ..config import get_settings
from ..utils import infer_type, to_datetime, try_parse_number

STATS_CSV = "stats.csv"


class MissingColumns(ValueError):
    """An input file lacks columns the pipeline needs."""

    def __init__(self, source: str, missing: Sequence[str]) -> None:
        self.source = source
        self.missing = tuple(missing)
        super().__init__(f"{source or '<input>'}: missing columns {', '.join(self.missing)}")


def require_columns(header: Iterable[str], required: Sequence[str], *, source: str = "") -> None:
    present = set(header)
    missing = [c for c in required if c not in present]
    if missing:
        raise MissingColumns(source, missing)


def parse_checked_csv(text: str, required: Sequence[str], *, source: str = "") -> List[Dict[str, str]]:
    """Parse CSV text after checking its header carries `required`."""
    require_columns(csv_header(text), required, source=source)
    return parse_csv_text(text)


def read_text(path: PathLike) -> str:
    # utf-8-sig: spreadsheet exports often carry a BOM
    with open(os.fspath(path), "r", encoding="utf-8-sig") as f:
        return f.read()


def artifact_stem(name: Any) -> str:
    """
    Check a value taken from the data before it names an output file.

    Path separators, NUL and the "." / ".." names are rejected so a product
    or app column can never write outside the output directory.
    """
    stem = str(name if name is not None else "").strip()
    if not stem or stem in (".", "..") or any(c in stem for c in ("/", "\\", "\x00")):
        raise ValueError(f"Unsafe artifact name: {name!r}")
    return stem


def csv_text(header: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow(["" if v is None else v for v in row])
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Generic typed table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnInfo:
    key: str
    type: str
    unique_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "type": self.type, "uniqueCount": self.unique_count}


@dataclass
class Table:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    columns: List[ColumnInfo] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def column(self, key: str) -> Optional[ColumnInfo]:
        for c in self.columns:
            if c.key == key:
                return c
        return None


def _normalize_cell(value: Any, kind: str) -> Any:
    if kind == "number":
        return try_parse_number(value)
    if kind == "date":
        return to_datetime(value) if isinstance(value, str) else None
    return value


def read_csv_table(path: Optional[PathLike] = None) -> Table:
    """
    Read a CSV file, infer a type per column and normalize every cell.

    Number columns hold int/float (None where a cell does not parse), date
    columns hold aware UTC datetimes (or None), string columns keep the
    trimmed text.
    """
    if path is None:
        path = get_settings().dataset_dir(STATS_CSV)
    text = read_text(path)
    records = parse_csv_text(text)
    keys = csv_header(text)

    columns: List[ColumnInfo] = []
    for key in keys:
        values = [r.get(key, "") for r in records]
        columns.append(
            ColumnInfo(
                key=key,
                type=infer_type(values),
                unique_count=len({str(v) for v in values}),
            )
        )

    rows = [{c.key: _normalize_cell(r.get(c.key, ""), c.type) for c in columns} for r in records]
    return Table(rows=rows, columns=columns)


__all__ = [
    "MissingColumns",
    "require_columns",
    "parse_checked_csv",
    "read_text",
    "artifact_stem",
    "csv_text",
    "ColumnInfo",
    "Table",
    "read_csv_table",
]
