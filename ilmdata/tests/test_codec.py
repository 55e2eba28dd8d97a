# ilmdata/tests/test_codec.py
import datetime as dt
import math

import pytest

from ilmdata.codec import (
    CorruptArtifact,
    MalformedValueModel,
    b64url_decode,
    b64url_encode,
    canonicalize,
    compress_text,
    compress_value,
    compress_value_to_b64url,
    decompress_text,
    decompress_value,
    decompress_value_file,
    decompress_value_from_b64url,
    dumps_value,
    load_compressed_csv,
    parse_csv_text,
    write_artifact,
)


def test_text_roundtrip_unicode():
    text = "بسم الله الرحمن الرحيم\n" * 20
    data = compress_text(text)
    assert len(data) < len(text.encode("utf-8"))
    assert decompress_text(data) == text


def test_empty_text_roundtrip():
    assert decompress_text(compress_text("")) == ""


def test_value_roundtrip_canonical_and_not():
    value = {"b": [1, 2, {"z": None, "a": True}], "a": "x", "n": 1.5}
    assert decompress_value(compress_value(value)) == value
    assert decompress_value(compress_value(value, canonical=False)) == value


def test_canonical_key_order_is_deterministic():
    a = {"b": 1, "a": {"d": 2, "c": 3}}
    b = {"a": {"c": 3, "d": 2}, "b": 1}
    assert dumps_value(a) == dumps_value(b) == '{"a":{"c":3,"d":2},"b":1}'
    assert compress_value(a) == compress_value(b)


def test_non_canonical_keeps_insertion_order():
    assert dumps_value({"b": 1, "a": 2}, canonical=False) == '{"b":1,"a":2}'


def test_canonicalize_keeps_list_order_and_converts_tuples():
    assert canonicalize([3, (2, 1), {"b": 0, "a": 0}]) == [3, [2, 1], {"a": 0, "b": 0}]


def test_datetime_rendering():
    aware = dt.datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=dt.timezone.utc)
    naive = dt.datetime(2024, 1, 2, 3, 4, 5)
    assert dumps_value({"t": aware}) == '{"t":"2024-01-02T03:04:05.678Z"}'
    assert dumps_value([naive]) == '["2024-01-02T03:04:05.000Z"]'
    assert dumps_value([dt.date(2024, 1, 2)]) == '["2024-01-02"]'


@pytest.mark.parametrize("bad", [{1, 2}, object(), math.nan, math.inf])
def test_unrepresentable_values_raise(bad):
    with pytest.raises(MalformedValueModel):
        compress_value({"x": bad})


def test_corrupt_stream_raises():
    with pytest.raises(CorruptArtifact):
        decompress_text(b"definitely not brotli")


def test_valid_brotli_with_bad_json_raises_model_error():
    with pytest.raises(MalformedValueModel):
        decompress_value(compress_text("{not json"))


def test_b64url_helpers():
    data = bytes(range(256))
    token = b64url_encode(data)
    assert "=" not in token and "+" not in token and "/" not in token
    assert b64url_decode(token) == data
    # padded standard alphabet is accepted too
    assert b64url_decode("QUJDRA==") == b"ABCD"
    with pytest.raises(ValueError):
        b64url_decode("not base64!")


def test_value_b64url_roundtrip():
    value = {"k": ["v", 1]}
    assert decompress_value_from_b64url(compress_value_to_b64url(value)) == value
    with pytest.raises(CorruptArtifact):
        decompress_value_from_b64url("%%%")


def test_write_artifact_creates_dirs_and_reads_back(tmp_path):
    target = tmp_path / "a" / "b" / "value.json.br"
    n = write_artifact(target, compress_value([1, 2, 3]))
    assert n == target.stat().st_size
    assert decompress_value_file(target) == [1, 2, 3]
    assert not (tmp_path / "a" / "b" / "value.json.br.tmp").exists()


def test_parse_csv_text_trims_and_pads():
    rows = parse_csv_text(' a , b ,c\n\n1, 2 \n"x,y",z,w\n')
    assert rows == [{"a": "1", "b": "2", "c": ""}, {"a": "x,y", "b": "z", "c": "w"}]


def test_load_compressed_csv(tmp_path):
    path = tmp_path / "t.csv.br"
    write_artifact(path, compress_text("id,name\n1,one\n2,two"))
    assert load_compressed_csv(path) == [{"id": "1", "name": "one"}, {"id": "2", "name": "two"}]
