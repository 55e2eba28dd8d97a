# ilmdata/tests/test_dictionary.py
import itertools

import pytest

from ilmdata.dictionary import (
    Dictionary,
    DictionaryNormalizer,
    build_dictionary,
    invert_mapping,
    normalize_batches,
)


def test_scenario_sorted_dense_ids():
    d = build_dictionary(["b@x.com", "a@x.com", "a@x.com"])
    assert d.to_json() == {"a@x.com": 1, "b@x.com": 2}
    assert d.inverse_json() == {"1": "a@x.com", "2": "b@x.com"}


def test_blanks_dropped_and_values_trimmed():
    d = build_dictionary([" x ", "", None, "  ", "x", "y"])
    assert d.to_json() == {"x": 1, "y": 2}
    assert d.id_for("  x") == 1
    assert "x " in d
    assert d.id_for("missing") is None


def test_order_independent():
    values = ["q10", "Z", "a", "Q10", "b", "a"]
    expected = build_dictionary(values).to_json()
    for perm in itertools.permutations(values):
        assert build_dictionary(perm).to_json() == expected


def test_code_point_order():
    # upper case sorts before lower case
    assert build_dictionary(["b", "B", "a"]).values() == ["B", "a", "b"]


def test_value_for_accepts_string_ids():
    d = build_dictionary(["x", "y"])
    assert d.value_for("2") == "y"
    assert d.value_for(2) == "y"
    assert d.value_for("nope") is None
    assert d.value_for(99) is None


def test_dictionary_is_immutable():
    d = build_dictionary(["x"])
    with pytest.raises(TypeError):
        d.forward["y"] = 2


def test_invert_mapping():
    assert invert_mapping({"a": 1, "b": 2}) == {1: "a", 2: "b"}
    with pytest.raises(ValueError):
        invert_mapping({"a": 1, "b": 1})


def test_from_forward_and_inverse():
    d = Dictionary.from_forward({"a": 1, "b": 2})
    assert Dictionary.from_inverse({"1": "a", "2": "b"}).to_json() == d.to_json()
    with pytest.raises(ValueError):
        Dictionary.from_forward({"a": 1, "b": 3})


ROWS_1 = [
    {"Country": "SA", "Device": "Q10", "When": "2024-01-02T00:00:00Z", "Product": "quran10"},
    {"Country": "", "Device": "Z10", "When": "2024-01-02T00:00:00Z", "Product": "quran10"},
]
ROWS_2 = [
    {"Country": "CA", "Device": "Z10", "When": "2024-01-01T00:00:00Z", "Product": "salat10"},
    {"Country": "US", "Device": "Q10", "When": "not a date", "Product": "salat10"},
]


def test_normalizer_two_passes():
    n = DictionaryNormalizer(
        {"Country": "CountryId", "Device": "DeviceId"},
        timestamp_fields={"When": "t"},
        passthrough={"Product": "product"},
    )
    assert n.observe(ROWS_1) == 2
    assert n.observe(ROWS_2) == 2
    dictionaries = n.freeze()
    assert n.frozen
    # values from dropped rows still get ids
    assert dictionaries["Country"].to_json() == {"CA": 1, "SA": 2, "US": 3}
    assert dictionaries["Device"].to_json() == {"Q10": 1, "Z10": 2}

    out = list(n.normalize(ROWS_1)) + list(n.normalize(ROWS_2))
    assert out == [
        {"product": "quran10", "CountryId": 2, "DeviceId": 1, "t": 1704153600},
        {"product": "salat10", "CountryId": 1, "DeviceId": 2, "t": 1704067200},
    ]


def test_observe_after_freeze_raises():
    n = DictionaryNormalizer({"a": "a_id"})
    n.observe([{"a": "x"}])
    n.freeze()
    with pytest.raises(RuntimeError):
        n.observe([{"a": "y"}])


def test_normalize_before_freeze_raises():
    n = DictionaryNormalizer({"a": "a_id"})
    with pytest.raises(RuntimeError):
        list(n.normalize([{"a": "x"}]))
    n.observe([{"a": "x"}])
    with pytest.raises(RuntimeError):
        n.normalize_row({"a": "x"})
    n.freeze()
    assert n.normalize_row({"a": "x"}) == {"a_id": 1}


def test_batch_boundaries_do_not_change_ids():
    rows = ROWS_1 + ROWS_2
    kwargs = dict(timestamp_fields={"When": "t"})
    a, da = normalize_batches([rows], {"Country": "c", "Device": "d"}, **kwargs)
    b, db = normalize_batches([rows[:1], rows[1:3], rows[3:]], {"Country": "c", "Device": "d"}, **kwargs)
    assert a == b
    assert {k: v.to_json() for k, v in da.items()} == {k: v.to_json() for k, v in db.items()}
