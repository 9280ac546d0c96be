"""Pure normalization helpers shared by matching, reconciliation and dedup.

Two phone forms exist and must not be confused:

- *storage* form (``format_phone_for_storage``): E.164-ish with a leading
  ``+``, written onto contact records.
- *matching* form (``normalize_phone``): digits only, international prefix
  included, used for every identity comparison and for the precomputed
  ``normalized_phones`` list.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from typing import Any

_NON_DIGIT = re.compile(r"\D")
_AU_AREA_CODES = frozenset("2378")
_AU_PREFIX = "+61"


def format_phone_for_storage(raw: str | None) -> str:
    """Format *raw* for storage, mapping Australian local numbers to ``+61``.

    Unknown shapes fall back to the bare digits. Empty input returns ``""``.
    """
    if not raw:
        return ""
    stripped = raw.strip()
    has_plus = stripped.startswith("+")
    digits = _NON_DIGIT.sub("", stripped)
    if not digits:
        return ""

    if has_plus and len(digits) >= 10:
        return "+" + digits
    # Mobiles: 4xx xxx xxx / 04xx xxx xxx
    if len(digits) == 9 and digits.startswith("4"):
        return _AU_PREFIX + digits
    if len(digits) == 10 and digits.startswith("04"):
        return _AU_PREFIX + digits[1:]
    # Landlines: area code 2/3/7/8, with or without the trunk 0
    if len(digits) == 9 and digits[0] in _AU_AREA_CODES:
        return _AU_PREFIX + digits
    if len(digits) == 10 and digits[0] == "0" and digits[1] in _AU_AREA_CODES:
        return _AU_PREFIX + digits[1:]
    if len(digits) >= 11:
        return "+" + digits
    return digits


def normalize_phone(raw: str | None) -> str:
    """Return the digits-only international form of *raw* (``""`` if empty)."""
    return _NON_DIGIT.sub("", format_phone_for_storage(raw))


def normalized_phone_set(values: Iterable[str | None]) -> list[str]:
    """Normalize *values*, dropping empties and duplicates, preserving order."""
    seen: dict[str, None] = {}
    for value in values:
        normalized = normalize_phone(value)
        if normalized and normalized not in seen:
            seen[normalized] = None
    return list(seen)


def normalize_handle(handle: str | None) -> str:
    """Strip whitespace and a leading ``@`` from a social handle."""
    if not handle:
        return ""
    return handle.strip().lstrip("@")


def handles_equal(left: str | None, right: str | None) -> bool:
    """Case-insensitive handle comparison. Empty handles never compare equal."""
    a = normalize_handle(left).casefold()
    b = normalize_handle(right).casefold()
    return bool(a) and a == b


def phones_equal(left: str | None, right: str | None) -> bool:
    a = normalize_phone(left)
    b = normalize_phone(right)
    return bool(a) and a == b


def extract_message_text(text: Any) -> str:
    """Return plain text from a message body.

    Some networks deliver the body as a JSON object (``{"text": ..., ...}``),
    either already parsed or serialized as a string.
    """
    if text is None:
        return ""
    if isinstance(text, str):
        trimmed = text.strip()
        if not trimmed:
            return ""
        if trimmed.startswith("{") and trimmed.endswith("}"):
            try:
                parsed = json.loads(trimmed)
            except ValueError:
                return text
            if isinstance(parsed, dict) and "text" in parsed:
                value = parsed["text"]
                return value if isinstance(value, str) else str(value)
        return text
    if isinstance(text, dict) and "text" in text:
        value = text["text"]
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)
    return str(text)


def compare_sort_keys(left: str, right: str) -> int:
    """Three-way comparison of two opaque sort keys.

    Purely numeric keys compare numerically so ``"999"`` sorts before
    ``"1000"``; anything else compares as a plain string.
    """
    a = sort_key_value(left)
    b = sort_key_value(right)
    return (a > b) - (a < b)


def sort_key_value(key: str) -> tuple[int, int | str]:
    """Key function for ordering sort keys, usable with ``sorted``.

    Numeric keys sort before non-numeric ones when a chat mixes both.
    """
    if key.isdigit():
        return (0, int(key))
    return (1, key)


def full_name(first: str | None, last: str | None) -> str:
    return " ".join(part.strip() for part in (first, last) if part and part.strip())
