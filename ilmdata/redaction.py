# FILE: ilmdata/redaction.py
"""
Field-level redaction contract.

On write, a sensitive free-text field is replaced by an encrypted token and
the record is marked. On read, a marked field is decrypted and the mark
cleared, but only when a cipher is available; without one the field stays
encrypted and the mark stays set. The mark is the only signal separating
"still encrypted" from "never sensitive", so nothing here guesses from the
field value.

Token errors propagate: a token that fails to decrypt is an error, never a
plaintext.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, MutableMapping, Optional

from .crypto import TokenCipher
from .pii import has_pii

REDACTION_MARK = "_redacted"
REDACTED_PREFIX = "__REDACTED__"

Predicate = Callable[[str], bool]


def redact_field(
    record: MutableMapping[str, Any],
    field: str,
    cipher: TokenCipher,
    *,
    predicate: Predicate = has_pii,
    mark: str = REDACTION_MARK,
) -> bool:
    """Encrypt record[field] in place if it is sensitive. Returns True if redacted."""
    value = record.get(field)
    if not isinstance(value, str) or not predicate(value):
        return False
    record[field] = cipher.encrypt(value)
    record[mark] = True
    return True


def restore_field(
    record: MutableMapping[str, Any],
    field: str,
    cipher: Optional[TokenCipher],
    *,
    mark: str = REDACTION_MARK,
) -> bool:
    """Decrypt record[field] in place if it is marked. Returns True if restored."""
    if not record.get(mark) or cipher is None:
        return False
    record[field] = cipher.decrypt(record[field])
    record[mark] = False
    return True


def redact_values(
    mapping: MutableMapping[Any, Any],
    cipher: TokenCipher,
    *,
    predicate: Predicate = has_pii,
    prefix: str = REDACTED_PREFIX,
) -> int:
    """
    Prefix-marked variant for lookup tables whose values are free text.

    Returns the number of values redacted.
    """
    n = 0
    for key, value in list(mapping.items()):
        if isinstance(value, str) and not value.startswith(prefix) and predicate(value):
            mapping[key] = prefix + cipher.encrypt(value)
            n += 1
    return n


def restore_values(
    mapping: MutableMapping[Any, Any],
    cipher: Optional[TokenCipher],
    *,
    prefix: str = REDACTED_PREFIX,
) -> int:
    if cipher is None:
        return 0
    n = 0
    for key, value in list(mapping.items()):
        if isinstance(value, str) and value.startswith(prefix):
            mapping[key] = cipher.decrypt(value[len(prefix) :])
            n += 1
    return n


def is_redacted(record: Dict[str, Any], *, mark: str = REDACTION_MARK) -> bool:
    return bool(record.get(mark))


__all__ = [
    "REDACTION_MARK",
    "REDACTED_PREFIX",
    "redact_field",
    "restore_field",
    "redact_values",
    "restore_values",
    "is_redacted",
]
