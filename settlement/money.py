from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_EVEN
from typing import Any

from settlement.errors import ValidationError

ZERO = Decimal("0")
HUNDRED = Decimal("100")
USD_PLACES = Decimal("0.00000001")
PERCENT_PLACES = Decimal("0.0001")


def to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = str(value).strip().replace(",", "")
    if not s:
        return None
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def require_decimal(value: Any, name: str = "amount") -> Decimal:
    amount = to_decimal(value)
    if amount is None or not amount.is_finite():
        raise ValidationError(f"{name} is not a number: {value!r}")
    return amount


def from_base_units(raw: int, decimals: int) -> Decimal:
    return Decimal(int(raw)).scaleb(-decimals)


def to_base_units(amount: Decimal, decimals: int) -> int:
    scaled = require_decimal(amount).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def quantize_usd(value: Decimal) -> Decimal:
    return value.quantize(USD_PLACES, rounding=ROUND_HALF_EVEN)


def quantize_percent(value: Decimal) -> Decimal:
    return value.quantize(PERCENT_PLACES, rounding=ROUND_HALF_EVEN)


def percent_of(part: Decimal, total: Decimal) -> Decimal:
    if total <= ZERO:
        return ZERO
    return quantize_percent(part / total * HUNDRED)
