"""Decimal helpers matching how the ERP front end rounds money and weight."""
from decimal import Decimal, ROUND_HALF_UP


def _quantize(value: float, places: int) -> Decimal:
    # Decimal(float) is the exact binary value, so ties round like Number.toFixed
    exponent = Decimal(1).scaleb(-places)
    return Decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def round_half_up(value: float, places: int) -> float:
    """Round to `places` decimals, half away from zero."""
    return float(_quantize(value, places))


def format_fixed(value: float, places: int) -> str:
    """Fixed-point string with exactly `places` decimals."""
    result = _quantize(value, places)
    if result.is_zero():
        # toFixed never renders "-0.00"
        result = abs(result)
    return f"{result:.{places}f}"


def format_number(value: float) -> int | float:
    """Integral floats become ints so JSON renders 3, not 3.0."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value
