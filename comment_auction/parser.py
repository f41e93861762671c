"""
Bid amount extraction from free-form comment text.

Patterns are tried in priority order and the first positive match wins:

    $25 / $25.50           dollar-prefixed number
    25 dollars             number followed by "dollar(s)"
    bid 25 / bid: $25      the word "bid" followed by a number
    25.50                  a bare number that is the whole comment
    25$                    number followed by a trailing dollar sign

Amounts carry at most two fractional digits. Comma-grouped numbers
("1,000") are never recognized.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional

CENT = Decimal("0.01")

_NUMBER = r"(\d+(?:\.\d{1,2})?)"
# number must not continue into more digits, fraction digits or a comma group
_END = r"(?!\d|\.\d|,\d)"
# number must not be the tail of a longer / grouped / signed number
_START = r"(?<![\d.,\-])"

BID_PATTERNS = (
    re.compile(r"(?<!-)\$" + _NUMBER + _END),
    re.compile(_START + _NUMBER + r"\s*dollars?\b", re.IGNORECASE),
    re.compile(r"\bbid\s*:?\s*\$?" + _NUMBER + _END, re.IGNORECASE),
    re.compile(r"^" + _NUMBER + r"$"),
    re.compile(_START + _NUMBER + r"\s*\$$"),
)


def to_money(value) -> Decimal:
    """Coerce a number or numeric string to a two-decimal amount."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT)


def format_amount(amount: Decimal) -> str:
    return str(to_money(amount))


def parse_bid_amount(text: Optional[str]) -> Optional[Decimal]:
    """Positive two-decimal amount found in ``text``, or None."""
    if not text:
        return None

    candidate = text.strip()
    for pattern in BID_PATTERNS:
        match = pattern.search(candidate)
        if not match:
            continue
        try:
            amount = to_money(match.group(1))
        except InvalidOperation:
            continue
        if amount > 0:
            return amount

    return None
