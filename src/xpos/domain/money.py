from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from xpos.domain.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def _to_decimal(value: object, field: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number.")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, float):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation as e:
            raise ValidationError(f"{field} must be a number. Received: {value!r}") from e
    else:
        raise ValidationError(f"{field} must be a number. Received: {value!r}")

    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite.")
    return amount


def parse_amount(value: object, field: str = "Amount") -> Decimal:
    """Coerce user input into a Decimal with two decimal places.

    Floats go through ``str`` first so ``0.1`` stays ``0.10`` instead of the
    binary expansion. Booleans are rejected even though they are ints, and so
    is anything finer than a cent: a counted ``100.005`` is an input error,
    not something to round away.
    """
    amount = _to_decimal(value, field)
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field} cannot have more than two decimal places. Received: {value!r}")
    return amount.quantize(CENT)


def to_minor(value: object) -> int:
    # Computed figures (profit, commission) may carry extra digits; round them.
    amount = _to_decimal(value, "Amount").quantize(CENT, rounding=ROUND_HALF_UP)
    return int(amount * 100)


def from_minor(minor: int) -> Decimal:
    return (Decimal(int(minor)) / 100).quantize(CENT)
