# ilmdata/tests/test_sessions.py
import json

import pytest

from ilmdata.codec import decompress_value_file
from ilmdata.datasets.sessions import (
    SessionExport,
    is_sensitive_payload,
    load_sessions,
    optimize_events,
    optimize_sessions,
)
from ilmdata.datasets.tabular import MissingColumns

SESSIONS = [
    {
        "id": 1,
        "user_id": 42,
        "timestamp": "2024-01-01T00:00:00.000Z",
        "data": json.dumps(
            [
                {"e": "Translate", "c": "sura", "t": 1},
                {"e": "OpenLink", "c": "https://example.com/page", "t": 2},
                {"e": "Feedback", "c": "reach me at me@example.com", "t": 3},
                {"e": "Search", "c": "mercy", "t": 4},
            ]
        ),
        "state": json.dumps({"platform": "web", "language": "en"}),
    },
    {
        "id": 2,
        "user_id": 43,
        "timestamp": "not a timestamp",
        "data": "[]",
        "state": "{}",
    },
]


@pytest.fixture
def artifact(tmp_path, write_text, cipher):
    src = write_text("raw/sessions.json", json.dumps(SESSIONS))
    out = tmp_path / "analytics.json.br"
    n = optimize_sessions(src, out, cipher)
    return out, n


def test_optimize_sessions(artifact):
    out, n = artifact
    assert n == 1
    sessions = decompress_value_file(out)
    assert len(sessions) == 1
    s = sessions[0]
    assert s["t"] == 1704067200
    assert s["user"] == 42
    assert s["state"] == {"language": "en", "platform": "web"}
    events = s["events"]
    assert events[0]["c"] == "4"
    assert "_redacted" not in events[0]
    assert events[1]["_redacted"] is True
    assert "example.com" not in events[1]["c"]
    assert events[2]["_redacted"] is True
    assert events[3] == {"e": "Search", "c": "mercy", "t": 4}


def test_load_sessions_with_secret(artifact, secret):
    out, _ = artifact
    sessions = load_sessions(out, secret)
    events = sessions[0]["events"]
    assert events[1]["_redacted"] is False
    assert events[1]["c"] == "https://example.com/page"
    assert events[2]["c"] == "reach me at me@example.com"


def test_load_sessions_from_env(artifact, secret, monkeypatch):
    out, _ = artifact
    monkeypatch.setenv("ENCRYPTION_SECRET", secret)
    assert load_sessions(out)[0]["events"][1]["c"] == "https://example.com/page"


def test_load_sessions_without_secret_stays_redacted(artifact):
    out, _ = artifact
    events = load_sessions(out)[0]["events"]
    assert events[1]["_redacted"] is True
    assert events[1]["c"].startswith("A")  # version byte 0x01 encodes as "A"


def test_session_export_validates_columns():
    with pytest.raises(MissingColumns):
        SessionExport.from_dict({"user_id": 1, "data": "[]"})
    with pytest.raises(ValueError):
        SessionExport.from_dict({"user_id": 1, "timestamp": "x", "data": "{\"e\": 1}", "state": "{}"})


def test_session_export_accepts_decoded_columns():
    s = SessionExport.from_dict({"user_id": 1, "timestamp": 0, "data": [{"e": "x"}], "state": {"a": 1}})
    assert s.events == [{"e": "x"}]
    assert s.state == {"a": 1}


def test_optimize_events_counts_redactions(cipher):
    events = [{"e": "Translate", "c": "https://x.com"}, {"e": "Open", "c": "http://x.com"}, {"e": "Open"}]
    assert optimize_events(events, cipher) == 1
    assert events[0]["c"] == "13"
    assert events[2] == {"e": "Open"}


def test_sensitive_payload():
    assert is_sensitive_payload("see https://a.b")
    assert is_sensitive_payload("a@b.co")
    assert not is_sensitive_payload("plain")
