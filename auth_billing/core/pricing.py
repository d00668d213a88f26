"""
Pricing calculations for authentication billing.

Unit prices are quoted in minor currency units (cents) per valid call.
Amounts are accumulated as integer minor units and divided once.
"""

from decimal import Decimal, ROUND_HALF_UP

MINOR_UNITS_PER_MAJOR = 100
_CENT = Decimal("0.01")


def amount_minor_units(valid_count: int, unit_price_minor: int) -> int:
    """Exact charge in minor units for a number of valid calls.

    Args:
        valid_count: Number of billable (valid) calls
        unit_price_minor: Price per call in minor units

    Returns:
        ``valid_count * unit_price_minor``

    Raises:
        ValueError: If either argument is negative
    """
    if valid_count < 0:
        raise ValueError("valid_count cannot be negative")
    if unit_price_minor < 0:
        raise ValueError("unit_price_minor cannot be negative")
    return valid_count * unit_price_minor


def to_major_units(minor: int) -> Decimal:
    """Convert minor units to a major-unit amount with two decimal places."""
    return (Decimal(minor) / MINOR_UNITS_PER_MAJOR).quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_amount(valid_count: int, unit_price_minor: int) -> Decimal:
    """Charge for a tier in major units.

    ``calculate_amount(1000, 140)`` is ``Decimal("1400.00")``: a thousand
    calls at 1.40 each.
    """
    return to_major_units(amount_minor_units(valid_count, unit_price_minor))
