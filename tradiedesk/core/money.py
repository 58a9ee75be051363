from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

MONEY_QUANT = Decimal("0.01")


def to_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def format_money(value: Any) -> str:
    """Render an amount as ``$X.XX``; anything unparseable renders as ``$0.00``."""
    if value is None or isinstance(value, bool):
        return "$0.00"
    text = str(value).strip()
    if not text:
        return "$0.00"
    try:
        amount = Decimal(text)
    except (InvalidOperation, ValueError):
        return "$0.00"
    if not amount.is_finite():
        return "$0.00"
    try:
        return f"${to_money(amount)}"
    except InvalidOperation:
        # More significant digits than the decimal context holds.
        return "$0.00"
