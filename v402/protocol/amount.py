# v402/protocol/amount.py
"""
Decimal string <-> atomic unit conversion.

All arithmetic is done on Python integers; amounts never pass through float.
"""
import re

# Conversion constants
SOL_DECIMALS = 9  # 1 SOL = 10^9 lamports
USDC_DECIMALS = 6  # 1 USDC = 10^6 base units

CURRENCY_DECIMALS = {
    "SOL": SOL_DECIMALS,
    "USDC": USDC_DECIMALS,
}

_DECIMAL_PATTERN = re.compile(r"^([0-9]*)(?:\.([0-9]*))?$")


def decimals_for(currency: str) -> int:
    """Return the decimal precision for a supported currency."""
    try:
        return CURRENCY_DECIMALS[currency]
    except KeyError:
        raise ValueError(f"Unsupported currency: {currency}")


def to_atomic_units(amount: str, decimals: int) -> int:
    """
    Convert a decimal string to integer atomic units.

    The fractional part is padded or truncated to exactly `decimals` digits.

    Args:
        amount: Decimal string, e.g. "0.50" or "100"
        decimals: Fractional digits of the currency (9 for SOL, 6 for USDC)

    Returns:
        whole * 10^decimals + fractional

    Raises:
        ValueError: If amount is not a non-negative decimal number
    """
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")

    text = str(amount).strip()
    match = _DECIMAL_PATTERN.match(text)
    if not text or not match or not (match.group(1) or match.group(2)):
        raise ValueError(f"Invalid decimal amount: {amount!r}")

    whole = match.group(1) or "0"
    fraction = (match.group(2) or "").ljust(decimals, "0")[:decimals]
    return int(whole) * 10 ** decimals + int(fraction or "0")


def from_atomic_units(units: int, decimals: int) -> str:
    """
    Convert integer atomic units back to a decimal string without trailing zeros.

    Example: from_atomic_units(500000, 6) -> "0.5"
    """
    if units < 0:
        raise ValueError(f"Atomic units must be non-negative, got {units}")
    if decimals == 0:
        return str(units)

    whole, fraction = divmod(units, 10 ** decimals)
    fraction_str = str(fraction).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{fraction_str}" if fraction_str else str(whole)
