"""
Lot-size formatting for Hyperliquid hedge orders.

Order sizes are floored to the asset's szDecimals so a rounded order never
exceeds the size the optimizer asked for.
"""

import math


def format_size(sz: float, sz_decimals: int) -> str:
    """
    Floor size to lot precision.

    Args:
        sz: Unsigned size in contracts
        sz_decimals: Asset szDecimals

    Returns:
        Size string without trailing zeros ("0" when it floors away)
    """
    if sz < 0:
        raise ValueError(f"size must be >= 0, got {sz}")
    q = 10 ** sz_decimals
    rounded = math.floor(sz * q) / q

    if sz_decimals > 0:
        return f"{rounded:.{sz_decimals}f}".rstrip("0").rstrip(".") or "0"
    return str(int(rounded))
