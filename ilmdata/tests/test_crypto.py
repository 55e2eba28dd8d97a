# ilmdata/tests/test_crypto.py
import pytest

from ilmdata import crypto
from ilmdata.codec import b64url_decode, b64url_encode
from ilmdata.crypto import (
    KEY_LEN,
    NONCE_LEN,
    TAG_LEN,
    AuthenticationFailed,
    CryptoError,
    MalformedToken,
    MissingSecret,
    SecretKeeper,
    TokenCipher,
    UnsupportedTokenVersion,
    derive_content_key,
    parse_secret,
)


def test_roundtrip_and_nonce_freshness(cipher):
    a = cipher.encrypt("hello world")
    b = cipher.encrypt("hello world")
    assert a != b
    assert cipher.decrypt(a) == cipher.decrypt(b) == "hello world"


def test_token_layout(cipher):
    raw = b64url_decode(cipher.encrypt("abc"))
    assert raw[0] == 1
    assert len(raw) == 1 + NONCE_LEN + len("abc") + TAG_LEN


def test_empty_and_unicode_plaintexts(cipher):
    for text in ("", "ﷺ", "a" * 5000):
        assert cipher.decrypt(cipher.encrypt(text)) == text


def test_hex_secret_scenario():
    c = TokenCipher.from_secret("41424344")
    token = c.encrypt("hello world")
    assert token != "hello world"
    assert c.decrypt(token) == "hello world"


def test_parse_secret_priority():
    assert parse_secret("41424344") == b"ABCD"
    assert parse_secret("QUJDRA") == b"ABCD"
    assert parse_secret("QUJDRA==") == b"ABCD"
    assert parse_secret("plain text secret") == b"plain text secret"


def test_32_byte_secret_is_used_directly():
    key = bytes(range(32))
    assert derive_content_key(key) == key
    assert len(derive_content_key(b"short")) == KEY_LEN
    assert derive_content_key(b"short") == derive_content_key(b"short")


def test_same_secret_different_encoding_same_key():
    # "ABCD" as hex and as base64 derive the same content key
    assert TokenCipher.from_secret("41424344").key == TokenCipher.from_secret("QUJDRA").key


def test_wrong_key_fails_authentication(cipher):
    other = TokenCipher.from_secret("another secret value")
    with pytest.raises(AuthenticationFailed):
        other.decrypt(cipher.encrypt("data"))


@pytest.mark.parametrize("token", ["bad-token", "", "!!!!", b64url_encode(b"\x01" * 20), b"AQIDBA", None])
def test_malformed_tokens(cipher, token):
    with pytest.raises(MalformedToken):
        cipher.decrypt(token)


def test_version_checked_before_authentication(cipher):
    raw = bytearray(b64url_decode(cipher.encrypt("data")))
    raw[0] = 2
    with pytest.raises(UnsupportedTokenVersion) as exc:
        cipher.decrypt(b64url_encode(bytes(raw)))
    assert exc.value.version == 2


def test_any_single_byte_flip_is_detected(cipher):
    raw = b64url_decode(cipher.encrypt("tamper me"))
    for i in range(1, len(raw)):
        flipped = bytearray(raw)
        flipped[i] ^= 0x01
        with pytest.raises((AuthenticationFailed, MalformedToken)):
            cipher.decrypt(b64url_encode(bytes(flipped)))


def test_missing_secret():
    with pytest.raises(MissingSecret):
        TokenCipher.from_secret("   ")
    with pytest.raises(MissingSecret):
        TokenCipher.from_secret(None)
    with pytest.raises(MissingSecret):
        TokenCipher.from_env()


def test_key_length_enforced():
    with pytest.raises(CryptoError):
        TokenCipher(key=b"too short")


def test_from_env_prefers_namespaced_variable(monkeypatch, secret):
    monkeypatch.setenv("ENCRYPTION_SECRET", "fallback secret")
    monkeypatch.setenv("ILM_ENCRYPTION_SECRET", secret)
    assert TokenCipher.from_env().key == TokenCipher.from_secret(secret).key
    monkeypatch.delenv("ILM_ENCRYPTION_SECRET")
    assert TokenCipher.from_env().key == TokenCipher.from_secret("fallback secret").key


def test_keeper_first_init_wins(secret):
    keeper = SecretKeeper()
    assert not keeper.keyed
    first = keeper.init(secret)
    assert keeper.keyed
    assert keeper.init("some other secret") is first
    keeper.reset()
    assert not keeper.keyed


def test_keeper_implicit_init_reads_env(monkeypatch, secret):
    keeper = SecretKeeper()
    with pytest.raises(MissingSecret):
        keeper.cipher()
    monkeypatch.setenv("ENCRYPTION_SECRET", secret)
    assert keeper.cipher().key == TokenCipher.from_secret(secret).key


def test_module_helpers(secret):
    assert not crypto.is_keyed()
    crypto.init_secret(secret)
    assert crypto.is_keyed()
    token = crypto.encrypt("x@example.com")
    assert crypto.decrypt(token) == "x@example.com"
    assert TokenCipher.from_secret(secret).decrypt(token) == "x@example.com"
    crypto.reset_secret_for_tests()
    assert not crypto.is_keyed()
