"""
Numeric helpers for the return estimators.
"""

import numpy as np


def ewma(arr: np.ndarray, alpha: float = 0.1) -> np.ndarray:
    """
    Exponentially weighted moving average, seeded with the first value.

    Args:
        arr: Input series, oldest first
        alpha: Weight of each new value (0 < alpha <= 1)

    Returns:
        Smoothed series of the same length
    """
    if not (0.0 < alpha <= 1.0):
        raise ValueError(f"alpha must be in (0, 1], got {alpha}")
    arr = np.asarray(arr, dtype=float)
    out = np.empty_like(arr)
    if arr.size == 0:
        return out

    acc = arr[0]
    for i, v in enumerate(arr):
        acc = alpha * v + (1 - alpha) * acc
        out[i] = acc
    return out
