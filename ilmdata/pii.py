# FILE: ilmdata/pii.py
"""
Coarse PII detection for free-text fields.

Used to decide which fields a pipeline encrypts before an artifact is
written, and by the log formatter to keep emails and phone numbers out of
log output. It is a heuristic, not an NLP classifier: it errs towards
flagging anything shaped like an email address or a phone number, with a
short list of digit runs that are known placeholders.
"""
from __future__ import annotations

import re
from typing import Any, List

PII_EMAIL_RE = re.compile(
    r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b", re.ASCII
)

_PHONE_PATTERNS = (
    # (415) 555-7890, 415-555-7890, 415.555.7890, 415 555 7890
    re.compile(r"\b\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b", re.ASCII),
    # +1-415-555-7890, +44 20 1234 5678
    re.compile(
        r"\+\d{1,3}[-.\s]?\(?\d{1,4}\)?[-.\s]?\d{1,4}[-.\s]?\d{1,4}[-.\s]?\d{1,9}",
        re.ASCII,
    ),
    # bare 10-11 digit runs
    re.compile(r"\b\d{10,11}\b", re.ASCII),
)

_NON_DIGIT_RE = re.compile(r"\D", re.ASCII)

_MIN_PHONE_DIGITS = 10
_MAX_PHONE_DIGITS = 15

_PLACEHOLDER_DIGITS = frozenset({"1234567890", "0123456789"})


def is_likely_phone_number(candidate: str) -> bool:
    """
    Reject digit runs that match a phone pattern but are not phone numbers:
    too short or too long once separators are stripped, all zeros, all
    ones, or the ascending 0-9 / 1-0 sequences.
    """
    digits = _NON_DIGIT_RE.sub("", candidate)
    if not (_MIN_PHONE_DIGITS <= len(digits) <= _MAX_PHONE_DIGITS):
        return False
    if set(digits) == {"0"} or set(digits) == {"1"}:
        return False
    if digits in _PLACEHOLDER_DIGITS:
        return False
    return True


def find_pii(text: Any) -> List[str]:
    """Return every email / phone-like span in `text` that passes the filters."""
    if not text or not isinstance(text, str):
        return []
    found: List[str] = [m.group(0) for m in PII_EMAIL_RE.finditer(text)]
    for pattern in _PHONE_PATTERNS:
        for m in pattern.finditer(text):
            if is_likely_phone_number(m.group(0)):
                found.append(m.group(0))
    return found


def has_pii(text: Any) -> bool:
    """
    True if `text` contains an email address or a plausible phone number.

    Empty strings and non-str input are never PII.
    """
    if not text or not isinstance(text, str):
        return False
    if PII_EMAIL_RE.search(text):
        return True
    for pattern in _PHONE_PATTERNS:
        for m in pattern.finditer(text):
            if is_likely_phone_number(m.group(0)):
                return True
    return False


__all__ = ["PII_EMAIL_RE", "is_likely_phone_number", "find_pii", "has_pii"]
