# ilmdata/tests/test_progress.py
import json

from ilmdata.codec import decompress_value_file
from ilmdata.datasets.progress import (
    condense_collection_stats,
    merge_collection_stats,
    optimize_reading_progress,
    write_collection_stats,
)

COLLECTION_CSV = "\n".join(
    [
        "id,timestamp,collection,covered,reviews,drafts,explained,total_entries,unlinked,verify",
        "1,2024-01-01T00:00:00Z,1,10,5,1,0,20,1,0",
        "2,2024-01-02T00:00:00Z,1,10,6,1,0,20,1,0",
        "3,2024-01-03T00:00:00Z,1,12,6,1,0,21,1,0",
        "4,2024-01-04T00:00:00Z,1,12,6,1,0,21,1,0",
        "5,2024-01-01T00:00:00Z,10,5,1,0,0,0,0,0",
        "6,2024-01-05T00:00:00Z,10,6,1,0,0,0,0,0",
        "7,2024-01-01T00:00:00Z,2,1,1,1,1,1,1,1",
    ]
)

PROGRESS_CSV = "\n".join(
    [
        "id,timestamp,user_id,surah_id,verse_id",
        "1,1000,2,1,3",
        "2,1500,1,2,2",
        "3,2000,1,2,3",
        "4,1500,1,3,1",
        "5,1500,1,3,2",
    ]
)


def test_condense_keeps_first_snapshot_and_changes(write_text):
    stats = condense_collection_stats(write_text("c.csv", COLLECTION_CSV))["stats"]
    assert list(stats) == ["1", "2", "10"]
    first = stats["1"][0]
    assert first == {
        "covered": 10,
        "reviews": 5,
        "drafts": 1,
        "explained": 0,
        "unlinked": 1,
        "verify": 0,
        "entries": 20,
        "t": 1704067200,
    }
    assert stats["1"][1] == {"reviews": 6, "t": 1704153600}
    assert stats["1"][2] == {"covered": 12, "entries": 21, "t": 1704240000}
    # an unchanged snapshot adds nothing
    assert len(stats["1"]) == 3
    # zero total_entries is left out
    assert "entries" not in stats["10"][0]
    assert stats["10"][1] == {"covered": 6, "t": 1704412800}


def test_merge_appends_and_sorts():
    previous = {"stats": {"1": [{"t": 0, "covered": 5}, {"t": 300, "covered": 8}]}}
    fresh = {"stats": {"1": [{"t": 100, "covered": 6}], "99": [{"t": 1}]}}
    merged = merge_collection_stats(previous, fresh)
    assert [e["t"] for e in merged["stats"]["1"]] == [0, 100, 300]
    assert "99" not in merged["stats"]
    # inputs are not mutated
    assert len(previous["stats"]["1"]) == 2


def test_write_collection_stats(tmp_path, write_text):
    stats = condense_collection_stats(write_text("c.csv", COLLECTION_CSV))
    n = write_collection_stats(stats, tmp_path / "out" / "collection_stats.json.br")
    assert n > 0
    assert decompress_value_file(tmp_path / "out" / "collection_stats.json.br") == stats
    write_collection_stats(stats, tmp_path / "collection_stats.json")
    assert json.loads((tmp_path / "collection_stats.json").read_text()) == stats


def test_reading_progress(tmp_path, write_text):
    out = tmp_path / "quran_progress.csv"
    assert optimize_reading_progress(write_text("p.csv", PROGRESS_CSV), out) == 5
    lines = out.read_text().strip().split("\n")
    assert lines == [
        "user,timestamp,surah,verse",
        "1,1,2,2",
        "1,1,3,1",
        "1,1,3,2",
        "1,2,2,3",
        "2,1,1,3",
    ]
