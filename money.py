from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union


# Keeps cents well inside a signed 64-bit INTEGER column.
MAX_AMOUNT = Decimal("999999999999.99")


def to_cents(value: Union[Decimal, int, float, str]) -> int:
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    if abs(amount) > MAX_AMOUNT:
        raise ValueError(f"Amount must not exceed {MAX_AMOUNT}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_units(cents: int) -> float:
    return cents / 100


def percent_of(part_cents: int, whole_cents: int) -> float:
    """``part / whole * 100`` rounded half-up to one decimal; 0 when ``whole`` is not positive."""
    if whole_cents <= 0:
        return 0.0
    ratio = Decimal(part_cents) * 100 / Decimal(whole_cents)
    return float(ratio.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def cents_to_decimal(cents: int) -> Decimal:
    return Decimal(cents) / 100
