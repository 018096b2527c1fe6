from __future__ import annotations

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D+")
_PHONE_SHAPE = re.compile(r"^\+?[\d\s\-()]{7,}$")


def normalize_phone(raw: Optional[str]) -> str:
    """Reduce a phone number to digits, rewriting the 27 country prefix to a local 0."""
    digits = _NON_DIGITS.sub("", raw or "")
    if digits.startswith("27") and len(digits) > 9:
        digits = "0" + digits[2:]
    return digits


def looks_like_phone(text: Optional[str]) -> bool:
    if not text:
        return False
    text = text.strip()
    return bool(_PHONE_SHAPE.match(text)) and len(_NON_DIGITS.sub("", text)) >= 7
