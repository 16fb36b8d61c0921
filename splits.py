# splits.py
# Amounts are Decimal here so a two-decimal custom split compares exactly.

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Mapping, Optional, Sequence

# Two amounts closer than this are considered equal
TOLERANCE = Decimal("0.01")

ZERO = Decimal("0")


class SplitMode(str, Enum):
    EQUAL = "EQUAL"
    CUSTOM = "CUSTOM"


class ValidationError(ValueError):
    """Raised when user input is rejected before anything is written."""


def to_decimal(value) -> Decimal:
    # str() gives the shortest repr of a float, so 0.1 stays Decimal("0.1")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def parse_amount(raw) -> Optional[Decimal]:
    """Parse user-typed text into an amount, or None if it is not a number."""
    if raw is None:
        return None
    if isinstance(raw, (int, float, Decimal)):
        raw = str(raw)
    text = raw.strip()
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def amounts_close(a, b) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) < TOLERANCE


def compute_shares(
    members: Sequence[str],
    total,
    mode: SplitMode,
    custom_input: Optional[Mapping[str, str]] = None,
) -> Dict[str, Decimal]:
    if not members:
        raise ValidationError("An expense needs at least one participant.")
    total = to_decimal(total)

    if mode == SplitMode.EQUAL:
        share = total / len(members)
        return {member: share for member in members}

    custom_input = custom_input or {}
    shares = {}
    for member in members:
        value = parse_amount(custom_input.get(member))
        shares[member] = value if value is not None else ZERO
    return shares


def shares_match_total(shares: Mapping[str, Decimal], total) -> bool:
    return amounts_close(sum(shares.values(), ZERO), total)


def detect_split_mode(members: Sequence[str], total, shares: Mapping[str, float]) -> SplitMode:
    """Guess how an existing expense was split so an edit can start from it."""
    if not members:
        return SplitMode.CUSTOM
    equal_share = to_decimal(total) / len(members)
    for member in members:
        if not amounts_close(shares.get(member, 0.0), equal_share):
            return SplitMode.CUSTOM
    return SplitMode.EQUAL


def shares_to_floats(shares: Mapping[str, Decimal]) -> Dict[str, float]:
    return {member: float(amount) for member, amount in shares.items()}
