"""Input masks for the manual card form and the seller price field.

Each mask mirrors what the checkout form applies on every keystroke, so the
server can accept raw field values and normalize them the same way.
"""
from __future__ import annotations

import re
from datetime import date
from typing import Optional

CARD_NUMBER_MAX_CHARS = 19  # 16 digits + 3 spaces
EXPIRY_MAX_DIGITS = 4
CVC_MAX_DIGITS = 4


def mask_card_number(value: str) -> str:
    """Keep digits and spaces only, truncated to 19 characters."""

    return re.sub(r"[^\d\s]", "", value)[:CARD_NUMBER_MAX_CHARS]


def mask_expiry(value: str) -> str:
    """Render up to four digits as ``MM/YY``; fewer than three digits stay bare."""

    digits = re.sub(r"\D", "", value)[:EXPIRY_MAX_DIGITS]
    return re.sub(r"^(\d{2})(\d{1,2})", r"\1/\2", digits)


def mask_cvc(value: str) -> str:
    return re.sub(r"\D", "", value)[:CVC_MAX_DIGITS]


def sanitize_price(value: str) -> str:
    return re.sub(r"[^0-9.]", "", value)


def card_digits(value: str) -> str:
    return re.sub(r"\D", "", value)


def luhn_valid(number: str) -> bool:
    digits = card_digits(number)
    if len(digits) < 12:
        return False
    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def parse_expiry(value: str) -> Optional[tuple[int, int]]:
    """Return ``(month, four_digit_year)`` for a masked ``MM/YY`` value."""

    match = re.fullmatch(r"(\d{2})/(\d{2})", value)
    if not match:
        return None
    month, year = int(match.group(1)), 2000 + int(match.group(2))
    if not 1 <= month <= 12:
        return None
    return month, year


def expiry_in_future(value: str, today: Optional[date] = None) -> bool:
    """A card stays valid through the last day of its expiry month."""

    parsed = parse_expiry(value)
    if parsed is None:
        return False
    month, year = parsed
    today = today or date.today()
    return (year, month) >= (today.year, today.month)
