# FILE: ilmdata/crypto.py
"""
Versioned, authenticated tokens for redacting fields in place.

Token layout (before base64url, padding stripped):

    version (1 byte) | nonce (12 bytes) | ciphertext | GCM tag (16 bytes)

The version byte is also the AES-GCM associated data, so it is covered by
the tag. A token is self-describing: decrypt() needs only the content key.

Key material comes from one operator-supplied secret. Pipelines receive a
TokenCipher explicitly; the module-level encrypt()/decrypt() helpers go
through a process-wide SecretKeeper whose first successful init wins for
the lifetime of the process.

This module never logs secrets, plaintexts, or tokens.
"""
from __future__ import annotations

import binascii
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Optional, Union

from cryptography.exceptions import InvalidTag  # type: ignore[import]
from cryptography.hazmat.primitives import hashes  # type: ignore[import]
from cryptography.hazmat.primitives.ciphers.aead import AESGCM  # type: ignore[import]
from cryptography.hazmat.primitives.kdf.hkdf import HKDF  # type: ignore[import]
from prometheus_client import Counter

from .codec import b64url_decode, b64url_encode

logger = logging.getLogger(__name__)

TOKEN_VERSION = 1
NONCE_LEN = 12  # AES-GCM 96-bit nonce
TAG_LEN = 16  # 128-bit tag
KEY_LEN = 32  # AES-256
TOKEN_AAD = bytes([TOKEN_VERSION])
MIN_TOKEN_LEN = 1 + NONCE_LEN + TAG_LEN

# HKDF context (non-secret). Writers and readers must agree on both.
HKDF_SALT = b"ilmdata:hkdf-salt:v1"
HKDF_INFO = b"aes-gcm:content-key:v1"

SECRET_ENV_VARS = ("ILM_ENCRYPTION_SECRET", "ENCRYPTION_SECRET")

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CryptoError(Exception):
    """Base crypto error."""


class MissingSecret(CryptoError):
    """No key material available."""


class TokenError(CryptoError):
    """A token could not be turned back into plaintext."""


class MalformedToken(TokenError):
    """Token is structurally invalid (bad base64, too short, bad UTF-8)."""


class UnsupportedTokenVersion(TokenError):
    """Token was written by a format version this build does not read."""

    def __init__(self, version: int) -> None:
        super().__init__(f"Unsupported token version: {version}")
        self.version = version


class AuthenticationFailed(TokenError):
    """Tag did not verify: token was tampered with or the key is wrong."""


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

_TOKEN_OPS = Counter(
    "ilm_token_ops_total",
    "Token encrypt/decrypt operations",
    labelnames=("op", "outcome"),
)


# ---------------------------------------------------------------------------
# Secret parsing / KDF
# ---------------------------------------------------------------------------


def parse_secret(material: str) -> bytes:
    """
    Turn operator-supplied secret text into raw bytes.

    Priority:
      1. even-length hex string -> hex bytes;
      2. base64 / base64url (padding optional) -> decoded bytes, unless the
         decode fails or yields nothing;
      3. anything else -> UTF-8 bytes of the text.
    """
    s = material.strip()
    if _HEX_RE.match(s) and len(s) % 2 == 0:
        return bytes.fromhex(s)
    try:
        decoded = b64url_decode(s)
        if decoded:
            return decoded
    except (binascii.Error, ValueError):
        pass
    return s.encode("utf-8")


def derive_content_key(secret: bytes, *, length: int = KEY_LEN) -> bytes:
    """
    32-byte secrets are used as the AES key directly; anything else goes
    through HKDF-SHA256 with the fixed salt/info above.
    """
    if len(secret) == length:
        return bytes(secret)
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=HKDF_SALT,
        info=HKDF_INFO,
    )
    return hkdf.derive(secret)


def secret_from_env() -> str:
    for name in SECRET_ENV_VARS:
        raw = os.environ.get(name, "")
        if raw.strip():
            return raw
    return ""


# ---------------------------------------------------------------------------
# RNG
# ---------------------------------------------------------------------------


class RngContext:
    def random_bytes(self, n: int) -> bytes:
        return os.urandom(n)


# ---------------------------------------------------------------------------
# Token cipher
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenCipher:
    """
    AES-256-GCM token encoder bound to one content key.

    Construct once (from_secret / from_env) and pass it to whatever needs
    to redact or restore fields.
    """

    key: bytes = field(repr=False)
    rng: RngContext = field(default_factory=RngContext, repr=False, compare=False)

    def __post_init__(self) -> None:
        if len(self.key) != KEY_LEN:
            raise CryptoError(f"Content key must be {KEY_LEN} bytes")

    @classmethod
    def from_secret(cls, material: Optional[Union[str, bytes]]) -> "TokenCipher":
        if isinstance(material, (bytes, bytearray)):
            if not material:
                raise MissingSecret("Encryption secret is empty")
            return cls(key=derive_content_key(bytes(material)))
        raw = (material or "").strip()
        if not raw:
            raise MissingSecret(
                "ENCRYPTION_SECRET is not set. Try: `openssl rand -base64 32`"
            )
        return cls(key=derive_content_key(parse_secret(raw)))

    @classmethod
    def from_env(cls) -> "TokenCipher":
        return cls.from_secret(secret_from_env())

    def encrypt(self, plaintext: str) -> str:
        nonce = self.rng.random_bytes(NONCE_LEN)
        sealed = AESGCM(self.key).encrypt(nonce, plaintext.encode("utf-8"), TOKEN_AAD)
        _TOKEN_OPS.labels("encrypt", "ok").inc()
        # AESGCM appends the tag to the ciphertext already.
        return b64url_encode(bytes([TOKEN_VERSION]) + nonce + sealed)

    def decrypt(self, token: str) -> str:
        try:
            buf = b64url_decode(token)
        except (binascii.Error, ValueError, AttributeError, TypeError) as e:
            _TOKEN_OPS.labels("decrypt", "malformed").inc()
            raise MalformedToken("Malformed token") from e
        if len(buf) < MIN_TOKEN_LEN:
            _TOKEN_OPS.labels("decrypt", "malformed").inc()
            raise MalformedToken("Malformed token")

        version = buf[0]
        if version != TOKEN_VERSION:
            _TOKEN_OPS.labels("decrypt", "unsupported_version").inc()
            raise UnsupportedTokenVersion(version)

        nonce = buf[1 : 1 + NONCE_LEN]
        body = buf[1 + NONCE_LEN :]
        if len(body) < TAG_LEN:
            _TOKEN_OPS.labels("decrypt", "malformed").inc()
            raise MalformedToken("Malformed token")

        try:
            plain = AESGCM(self.key).decrypt(nonce, body, TOKEN_AAD)
        except InvalidTag as e:
            _TOKEN_OPS.labels("decrypt", "auth_failed").inc()
            raise AuthenticationFailed("Token failed authentication") from e

        try:
            text = plain.decode("utf-8")
        except UnicodeDecodeError as e:
            _TOKEN_OPS.labels("decrypt", "malformed").inc()
            raise MalformedToken("Token plaintext is not valid UTF-8") from e
        _TOKEN_OPS.labels("decrypt", "ok").inc()
        return text


# ---------------------------------------------------------------------------
# Process-wide keeper
# ---------------------------------------------------------------------------


class SecretKeeper:
    """
    One-time key initialization guard.

    Uninitialized -> Keyed, and Keyed is terminal: once a key is set, init()
    ignores any secret it is given. reset() exists for tests only.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cipher: Optional[TokenCipher] = None

    @property
    def keyed(self) -> bool:
        return self._cipher is not None

    def init(self, material: Optional[str] = None) -> TokenCipher:
        cipher = self._cipher
        if cipher is not None:
            return cipher
        with self._lock:
            if self._cipher is None:
                source = material if material is not None and material.strip() else secret_from_env()
                self._cipher = TokenCipher.from_secret(source)
                logger.info("content key established")
            return self._cipher

    def cipher(self) -> TokenCipher:
        # implicit init reads the environment only
        return self.init(None)

    def reset(self) -> None:
        with self._lock:
            self._cipher = None


_DEFAULT_KEEPER = SecretKeeper()


def init_secret(material: Optional[str] = None) -> None:
    _DEFAULT_KEEPER.init(material)


def is_keyed() -> bool:
    return _DEFAULT_KEEPER.keyed


def default_cipher() -> TokenCipher:
    return _DEFAULT_KEEPER.cipher()


def encrypt(plaintext: str) -> str:
    return _DEFAULT_KEEPER.cipher().encrypt(plaintext)


def decrypt(token: str) -> str:
    return _DEFAULT_KEEPER.cipher().decrypt(token)


def reset_secret_for_tests() -> None:
    _DEFAULT_KEEPER.reset()


__all__ = [
    "TOKEN_VERSION",
    "NONCE_LEN",
    "TAG_LEN",
    "KEY_LEN",
    "CryptoError",
    "MissingSecret",
    "TokenError",
    "MalformedToken",
    "UnsupportedTokenVersion",
    "AuthenticationFailed",
    "parse_secret",
    "derive_content_key",
    "secret_from_env",
    "TokenCipher",
    "SecretKeeper",
    "init_secret",
    "is_keyed",
    "default_cipher",
    "encrypt",
    "decrypt",
    "reset_secret_for_tests",
]
