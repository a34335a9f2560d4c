"""
Canonical card-number derivation for raw reader payloads.

Some vguang reader firmware sends the card identifier as raw bytes,
least-significant byte first. Text payloads are used as-is (uppercased);
anything else is byte-reversed and hex-encoded to match the stored number.
"""

from __future__ import annotations

import string

_TEXT_CHARACTERS = frozenset(string.ascii_letters + string.digits + "-")


def is_plain_card_text(text: str) -> bool:
    return bool(text) and all(ch in _TEXT_CHARACTERS for ch in text)


def derive_card_number(raw: bytes) -> str:
    """Return the canonical card number for ``raw``; empty input gives ``""``."""
    if not raw:
        return ""

    try:
        text = raw.decode("utf-8").strip()
    except UnicodeDecodeError:
        text = None

    if text is not None:
        if not text:
            return ""
        if is_plain_card_text(text):
            return text.upper()

    return bytes(reversed(raw)).hex().upper()
