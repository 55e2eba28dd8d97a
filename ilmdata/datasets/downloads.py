# FILE: ilmdata/datasets/downloads.py
"""
App store download logs.

Raw exports (one CSV per period) are dictionary-encoded across every file
at once, so ids stay comparable between products, then split into one
compressed CSV per product. The dashboard side loads the inverse
dictionaries plus a product CSV and computes breakdowns from ids.
"""
from __future__ import annotations

import datetime as _dt
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..aggregate import CategoryShare, count_by_day, percentage_breakdown, top_names
from ..codec import PathLike, compress_text, decompress_text, dumps_value, loads_value, read_artifact, write_artifact
from ..config import get_settings
from ..logging import get_logger
from ..dictionary import Dictionary, DictionaryNormalizer
from ..utils import parse_count
from .tabular import MissingColumns, artifact_stem, csv_text, parse_checked_csv, read_text

VALID_APP_NAMES = ("quran10", "sunnah10", "salat10")

# (artifact stem, raw column, encoded column)
DIMENSIONS: Tuple[Tuple[str, str, str], ...] = (
    ("versions", "Version", "VersionId"),
    ("devices", "DeviceModel", "DeviceId"),
    ("osVersions", "OSVersion", "OSId"),
    ("locales", "Locale", "LocaleId"),
    ("countries", "Country", "CountryId"),
    ("carriers", "Carrier", "CarrierId"),
)

RAW_COLUMNS = ("ProductName", "DateTime") + tuple(raw for _, raw, _ in DIMENSIONS)
CSV_COLUMNS = ("VersionId", "DateTime", "DeviceId", "OSId", "CarrierId", "LocaleId", "CountryId")


def is_valid_app_name(app_name: Any) -> bool:
    return isinstance(app_name, str) and app_name in VALID_APP_NAMES


@dataclass(frozen=True)
class DownloadRow:
    """One normalized download: dimension ids plus epoch seconds."""

    version_id: int
    date_time: int
    device_id: int
    os_id: int
    carrier_id: int
    locale_id: int
    country_id: int
    product_name: str = ""

    @classmethod
    def from_csv_row(cls, row: Mapping[str, Any], *, product_name: str = "") -> "DownloadRow":
        return cls(
            version_id=parse_count(row.get("VersionId")),
            date_time=parse_count(row.get("DateTime")),
            device_id=parse_count(row.get("DeviceId")),
            os_id=parse_count(row.get("OSId")),
            carrier_id=parse_count(row.get("CarrierId")),
            locale_id=parse_count(row.get("LocaleId")),
            country_id=parse_count(row.get("CountryId")),
            product_name=product_name or str(row.get("ProductName", "")),
        )

    def csv_cells(self) -> Tuple[int, ...]:
        return (
            self.version_id,
            self.date_time,
            self.device_id,
            self.os_id,
            self.carrier_id,
            self.locale_id,
            self.country_id,
        )


# ---------------------------------------------------------------------------
# Normalization (write side)
# ---------------------------------------------------------------------------


def _dictionary_json(d: Dictionary) -> bytes:
    return dumps_value(d.to_json(), canonical=False).encode("utf-8")


def _inverse_json(d: Dictionary) -> bytes:
    return dumps_value(d.inverse_json(), canonical=False).encode("utf-8")


def normalize_downloads(
    paths: Sequence[PathLike],
    out_dir: Optional[PathLike] = None,
) -> Tuple[Dict[str, List[DownloadRow]], Dict[str, Dictionary]]:
    """
    Dictionary-encode raw download exports and write the artifacts.

    Writes, under out_dir:
      - <dimension>.json        value -> id
      - <dimension>_by_id.json  id -> value
      - <product>.csv.br        encoded rows for that product, oldest first

    Rows missing the product or any dimension, or with an unparseable
    DateTime, are dropped. Returns (rows grouped by product, dictionaries
    keyed by artifact stem).
    """
    settings = get_settings()
    target = os.fspath(out_dir) if out_dir is not None else settings.dataset_dir("bb10")

    batches: List[List[Dict[str, str]]] = []
    for path in paths:
        batches.append(parse_checked_csv(read_text(path), RAW_COLUMNS, source=os.fspath(path)))

    normalizer = DictionaryNormalizer(
        {raw: encoded for _, raw, encoded in DIMENSIONS},
        required=("ProductName",) + tuple(raw for _, raw, _ in DIMENSIONS),
        timestamp_fields={"DateTime": "DateTime"},
        passthrough={"ProductName": "ProductName"},
    )
    rows_in = 0
    for batch in batches:
        rows_in += normalizer.observe(batch)
    by_column = normalizer.freeze()

    records: List[DownloadRow] = []
    for batch in batches:
        for rec in normalizer.normalize(batch):
            records.append(DownloadRow.from_csv_row(rec))
    records.sort(key=lambda r: r.date_time)

    grouped: Dict[str, List[DownloadRow]] = {}
    for rec in records:
        grouped.setdefault(rec.product_name, []).append(rec)
    stems = {product: artifact_stem(product) for product in grouped}

    dictionaries = {stem: by_column[raw] for stem, raw, _ in DIMENSIONS}
    for stem, d in dictionaries.items():
        write_artifact(os.path.join(target, f"{stem}.json"), _dictionary_json(d))
        write_artifact(os.path.join(target, f"{stem}_by_id.json"), _inverse_json(d))

    bytes_out = 0
    for product, rows in grouped.items():
        body = csv_text(CSV_COLUMNS, (r.csv_cells() for r in rows))
        bytes_out += write_artifact(
            os.path.join(target, f"{stems[product]}.csv.br"),
            compress_text(body, quality=settings.brotli_quality, window=settings.brotli_window),
        )

    get_logger(__name__).info(
        "downloads normalized",
        extra={
            "dataset": "downloads",
            "rows_in": rows_in,
            "rows_out": len(records),
            "rows_dropped": rows_in - len(records),
            "bytes_out": bytes_out,
        },
    )
    return grouped, dictionaries


# ---------------------------------------------------------------------------
# Loading (read side)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReferenceData:
    """id -> display name lookups for each dimension."""

    versions: Dict[str, str] = field(default_factory=dict)
    devices: Dict[str, str] = field(default_factory=dict)
    os_versions: Dict[str, str] = field(default_factory=dict)
    locales: Dict[str, str] = field(default_factory=dict)
    countries: Dict[str, str] = field(default_factory=dict)
    carriers: Dict[str, str] = field(default_factory=dict)


_REFERENCE_FIELDS = {
    "versions": "versions",
    "devices": "devices",
    "osVersions": "os_versions",
    "locales": "locales",
    "countries": "countries",
    "carriers": "carriers",
}


def _load_lookup(data_dir: str, stem: str) -> Dict[str, str]:
    inverse_path = os.path.join(data_dir, f"{stem}_by_id.json")
    if os.path.exists(inverse_path):
        doc = loads_value(read_artifact(inverse_path).decode("utf-8"))
        return {str(k): str(v) for k, v in doc.items()}
    doc = loads_value(read_artifact(os.path.join(data_dir, f"{stem}.json")).decode("utf-8"))
    return Dictionary.from_forward(doc).inverse_json()


def load_reference_data(data_dir: Optional[PathLike] = None) -> ReferenceData:
    base = os.fspath(data_dir) if data_dir is not None else get_settings().dataset_dir("bb10")
    return ReferenceData(**{attr: _load_lookup(base, stem) for stem, attr in _REFERENCE_FIELDS.items()})


def load_downloads(app_name: str, data_dir: Optional[PathLike] = None) -> List[DownloadRow]:
    if not is_valid_app_name(app_name):
        raise ValueError(f"Unknown app: {app_name!r}")
    base = os.fspath(data_dir) if data_dir is not None else get_settings().dataset_dir("bb10")
    path = os.path.join(base, f"{app_name}.csv.br")
    text = decompress_text(read_artifact(path))
    rows = parse_checked_csv(text, CSV_COLUMNS, source=path)
    return [DownloadRow.from_csv_row(r, product_name=app_name) for r in rows]


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DownloadStats:
    total_downloads: int
    unique_devices: int
    date_range: Optional[Tuple[_dt.datetime, _dt.datetime]]
    downloads_by_country: List[CategoryShare]
    downloads_by_version: List[CategoryShare]
    downloads_by_device: List[CategoryShare]
    downloads_by_carrier: List[CategoryShare]
    downloads_by_os: List[CategoryShare]
    downloads_by_locale: List[CategoryShare]
    downloads_over_time: List[Tuple[str, int]]
    top_countries: List[str]
    top_devices: List[str]
    top_versions: List[str]

    def to_dict(self) -> Dict[str, Any]:
        def shares(items: List[CategoryShare]) -> List[Dict[str, Any]]:
            return [s.to_dict() for s in items]

        return {
            "totalDownloads": self.total_downloads,
            "uniqueDevices": self.unique_devices,
            "dateRange": (
                {"start": self.date_range[0], "end": self.date_range[1]} if self.date_range else None
            ),
            "downloadsByCountry": shares(self.downloads_by_country),
            "downloadsByVersion": shares(self.downloads_by_version),
            "downloadsByDevice": shares(self.downloads_by_device),
            "downloadsByCarrier": shares(self.downloads_by_carrier),
            "downloadsByOS": shares(self.downloads_by_os),
            "downloadsByLocale": shares(self.downloads_by_locale),
            "downloadsOverTime": [{"date": d, "downloads": n} for d, n in self.downloads_over_time],
            "topCountries": list(self.top_countries),
            "topDevices": list(self.top_devices),
            "topVersions": list(self.top_versions),
        }


def _utc(ts: int) -> _dt.datetime:
    return _dt.datetime.fromtimestamp(ts, tz=_dt.timezone.utc)


def calculate_download_stats(
    records: Sequence[DownloadRow],
    reference: ReferenceData,
    *,
    top: Optional[int] = None,
    top_versions: Optional[int] = None,
) -> DownloadStats:
    """
    Totals and per-dimension breakdowns for one product.

    Percentages are shares of all records. An empty input yields zero
    totals, empty lists and date_range None.
    """
    settings = get_settings()
    n_top = settings.leaderboard_size if top is None else top
    n_versions = settings.top_versions if top_versions is None else top_versions

    by_country = percentage_breakdown(records, lambda r: r.country_id, reference.countries)
    by_version = percentage_breakdown(records, lambda r: r.version_id, reference.versions)
    by_device = percentage_breakdown(records, lambda r: r.device_id, reference.devices)
    date_range = None
    if records:
        stamps = [r.date_time for r in records]
        date_range = (_utc(min(stamps)), _utc(max(stamps)))

    return DownloadStats(
        total_downloads=len(records),
        unique_devices=len({r.device_id for r in records}),
        date_range=date_range,
        downloads_by_country=by_country,
        downloads_by_version=by_version,
        downloads_by_device=by_device,
        downloads_by_carrier=percentage_breakdown(records, lambda r: r.carrier_id, reference.carriers),
        downloads_by_os=percentage_breakdown(records, lambda r: r.os_id, reference.os_versions),
        downloads_by_locale=percentage_breakdown(records, lambda r: r.locale_id, reference.locales),
        downloads_over_time=count_by_day(records, lambda r: r.date_time),
        top_countries=top_names(by_country, n_top),
        top_devices=top_names(by_device, n_top),
        top_versions=top_names(by_version, n_versions),
    )


__all__ = [
    "VALID_APP_NAMES",
    "DIMENSIONS",
    "CSV_COLUMNS",
    "MissingColumns",
    "DownloadRow",
    "ReferenceData",
    "DownloadStats",
    "is_valid_app_name",
    "normalize_downloads",
    "load_reference_data",
    "load_downloads",
    "calculate_download_stats",
]
