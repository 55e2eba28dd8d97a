# ilmdata/tests/test_downloads.py
import json
import os

import pytest

from ilmdata.codec import decompress_text
from ilmdata.config import get_settings
from ilmdata.datasets.downloads import (
    DownloadRow,
    ReferenceData,
    calculate_download_stats,
    is_valid_app_name,
    load_downloads,
    load_reference_data,
    normalize_downloads,
)
from ilmdata.datasets.tabular import MissingColumns

HEADER = "ProductName,FileBundleName,Version,DateTime,DeviceModel,OSVersion,Carrier,Locale,Country"

EXPORT_A = "\n".join(
    [
        HEADER,
        "quran10,quran10,2.0,2024-01-02T10:00:00Z,Q10,10.3,Rogers,en_CA,Canada",
        "quran10,quran10,1.0,2024-01-01T10:00:00Z,Z10,10.2,STC,ar_SA,Saudi Arabia",
        "salat10,salat10,1.0,2024-01-03T00:00:00Z,Q10,10.3,STC,ar_SA,Saudi Arabia",
    ]
)
EXPORT_B = "\n".join(
    [
        HEADER,
        "quran10,quran10,2.0,2024-01-01T12:00:00Z,Q10,10.3,STC,ar_SA,Saudi Arabia",
        "quran10,quran10,,2024-01-01T12:00:00Z,Q10,10.3,STC,ar_SA,Saudi Arabia",
        "quran10,quran10,2.0,garbage,Q10,10.3,STC,ar_SA,Saudi Arabia",
    ]
)


@pytest.fixture
def normalized(tmp_path, write_text):
    a = write_text("raw/a.csv", EXPORT_A)
    b = write_text("raw/b.csv", EXPORT_B)
    out = tmp_path / "bb10"
    grouped, dictionaries = normalize_downloads([a, b], out)
    return out, grouped, dictionaries


def test_normalize_writes_dictionaries(normalized):
    out, _, dictionaries = normalized
    assert json.loads((out / "countries.json").read_text()) == {"Canada": 1, "Saudi Arabia": 2}
    assert json.loads((out / "countries_by_id.json").read_text()) == {"1": "Canada", "2": "Saudi Arabia"}
    assert json.loads((out / "versions.json").read_text()) == {"1.0": 1, "2.0": 2}
    assert (out / "osVersions_by_id.json").exists()
    assert dictionaries["devices"].to_json() == {"Q10": 1, "Z10": 2}


def test_normalize_groups_sorts_and_drops(normalized):
    out, grouped, _ = normalized
    assert sorted(grouped) == ["quran10", "salat10"]
    quran = grouped["quran10"]
    # blank Version and bad DateTime rows are dropped
    assert len(quran) == 3
    assert [r.date_time for r in quran] == sorted(r.date_time for r in quran)
    assert quran[0] == DownloadRow(1, 1704103200, 2, 1, 2, 1, 2, "quran10")

    text = decompress_text((out / "quran10.csv.br").read_bytes())
    lines = text.strip().split("\n")
    assert lines[0] == "VersionId,DateTime,DeviceId,OSId,CarrierId,LocaleId,CountryId"
    assert lines[1] == "1,1704103200,2,1,2,1,2"
    assert len(lines) == 4


def test_normalize_default_out_dir(write_text):
    a = write_text("raw/a.csv", EXPORT_A)
    normalize_downloads([a])
    assert os.path.exists(get_settings().dataset_dir("bb10", "salat10.csv.br"))


def test_missing_columns(write_text, tmp_path):
    bad = write_text("raw/bad.csv", "ProductName,Version\nquran10,1.0")
    with pytest.raises(MissingColumns) as exc:
        normalize_downloads([bad], tmp_path / "out")
    assert "DateTime" in exc.value.missing
    assert isinstance(exc.value, ValueError)


def test_load_and_stats(normalized):
    out, _, _ = normalized
    reference = load_reference_data(out)
    assert reference.countries == {"1": "Canada", "2": "Saudi Arabia"}
    records = load_downloads("quran10", out)
    assert len(records) == 3
    assert all(r.product_name == "quran10" for r in records)

    stats = calculate_download_stats(records, reference)
    assert stats.total_downloads == 3
    assert stats.unique_devices == 2
    assert stats.date_range[0].isoformat() == "2024-01-01T10:00:00+00:00"
    assert stats.date_range[1].isoformat() == "2024-01-02T10:00:00+00:00"
    assert [(s.name, s.count, s.percentage) for s in stats.downloads_by_country] == [
        ("Saudi Arabia", 2, 66.67),
        ("Canada", 1, 33.33),
    ]
    assert stats.downloads_over_time == [("2024-01-01", 2), ("2024-01-02", 1)]
    assert stats.top_countries == ["Saudi Arabia", "Canada"]
    assert stats.top_versions == ["2.0", "1.0"]
    body = stats.to_dict()
    assert body["totalDownloads"] == 3
    assert body["downloadsOverTime"][0] == {"date": "2024-01-01", "downloads": 2}


def test_top_lists_are_capped(normalized):
    out, _, _ = normalized
    records = load_downloads("quran10", out)
    stats = calculate_download_stats(records, load_reference_data(out), top=1, top_versions=1)
    assert stats.top_countries == ["Saudi Arabia"]
    assert stats.top_versions == ["2.0"]


def test_unknown_ids_are_labelled(normalized):
    out, _, _ = normalized
    stats = calculate_download_stats(
        [DownloadRow(9, 1704067200, 1, 1, 1, 1, 7)], load_reference_data(out)
    )
    assert stats.downloads_by_country[0].name == "Unknown (7)"
    assert stats.downloads_by_version[0].name == "Unknown (9)"


def test_reference_falls_back_to_forward_files(normalized):
    out, _, _ = normalized
    for p in out.glob("*_by_id.json"):
        p.unlink()
    assert load_reference_data(out).versions == {"1": "1.0", "2": "2.0"}


def test_empty_stats():
    stats = calculate_download_stats([], ReferenceData())
    assert stats.total_downloads == 0
    assert stats.date_range is None
    assert stats.downloads_by_country == []
    assert stats.top_versions == []


def test_app_name_validation(tmp_path):
    assert is_valid_app_name("sunnah10")
    assert not is_valid_app_name("../etc")
    with pytest.raises(ValueError):
        load_downloads("../etc", tmp_path)


@pytest.mark.parametrize("product", ["../escape", "a/b", ".."])
def test_normalize_rejects_unsafe_product_names(tmp_path, write_text, product):
    raw = write_text("raw/x.csv", EXPORT_A.replace("salat10,salat10", f"{product},salat10"))
    out = tmp_path / "nested" / "bb10"
    with pytest.raises(ValueError):
        normalize_downloads([raw], out)
    assert not (tmp_path / "nested" / "escape.csv.br").exists()
    assert not out.exists()


def test_artifact_stem():
    from ilmdata.datasets.tabular import artifact_stem

    assert artifact_stem(" quran10 ") == "quran10"
    for bad in ("", None, ".", "..", "x\\y", "x/y"):
        with pytest.raises(ValueError):
            artifact_stem(bad)
