"""
Per-market return and risk estimates from pool state history.

All quantities are in basis points of pool value per observation period
(returns) or bps^2 (variances).
"""

from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.covariance import LedoitWolf

from yield_rebalancer.data.entities import MarketStateObservation
from yield_rebalancer.utils.math_helpers import ewma

BPS = 10_000.0


def pool_return_series(history: Sequence[MarketStateObservation]) -> np.ndarray:
    """
    LP return per period: fees earned minus the change in trader pnl
    (traders' gains are the pool's losses), over the prior pool value.
    """
    out: List[float] = []
    for prev, cur in zip(history[:-1], history[1:]):
        pool_value = prev.pool_value_usd
        if pool_value <= 0:
            continue
        pnl_change = cur.pnl_net - prev.pnl_net
        out.append(BPS * (cur.fees_total - pnl_change) / pool_value)
    return np.asarray(out, dtype=float)


def expected_return_bps(history: Sequence[MarketStateObservation], alpha: float) -> Optional[float]:
    """
    Expected LP return for the next period.

    fee income (EWMA of realized non-borrowing fees)
    + borrowing accrual on current open interest
    - realized trader pnl drift
    """
    if not history:
        return None
    current = history[-1]
    pool_value = current.pool_value_usd
    if pool_value <= 0:
        return None

    fees = np.array([h.fees_total - h.fees_borrowing for h in history], dtype=float)
    fee_income = float(ewma(fees, alpha)[-1])

    borrowing = (
        current.borrowing_factor_long * current.open_interest_long
        + current.borrowing_factor_short * current.open_interest_short
    )

    pnl = np.array([h.pnl_net for h in history], dtype=float)
    pnl_drift = float(np.mean(np.diff(pnl))) if len(pnl) >= 2 else 0.0

    return BPS * (fee_income + borrowing - pnl_drift) / pool_value


def directional_exposure(state: MarketStateObservation) -> float:
    """
    Index-price exposure of one unit of pool value.

    The pool holds its long-collateral share outright and is counterparty
    to traders' net open interest.
    """
    pool_value = state.pool_value_usd
    if pool_value <= 0:
        return 0.0
    return (state.pool_long_usd - state.net_oi_via_tokens) / pool_value


def covariance_matrix(
    return_series: Sequence[np.ndarray],
    utilizations: Sequence[float],
    variance_floor: float,
    utilization_penalty: float,
    min_history: int,
) -> np.ndarray:
    """
    Shrunk covariance of pool returns, inflated by utilization.

    Series are aligned on their common (most recent) length. With too little
    history the matrix falls back to per-market sample variances (or the
    floor) on the diagonal.
    """
    n = len(return_series)
    if n == 0:
        return np.zeros((0, 0))

    min_len = min(len(s) for s in return_series)
    if min_len >= max(2, min_history):
        frame = pd.DataFrame({i: np.asarray(s, dtype=float)[-min_len:] for i, s in enumerate(return_series)})
        cov = LedoitWolf().fit(frame.values).covariance_
    else:
        diag = []
        for s in return_series:
            diag.append(float(np.var(s, ddof=1)) if len(s) >= 2 else variance_floor)
        cov = np.diag(diag)

    cov = np.array(cov, dtype=float)
    idx = np.arange(n)
    cov[idx, idx] = np.maximum(cov[idx, idx], variance_floor)

    # Higher utilization = fatter tails. D S D keeps the matrix PSD.
    u = np.clip(np.asarray(utilizations, dtype=float), 0.0, None)
    d = np.sqrt(1.0 + utilization_penalty * u)
    return d[:, None] * cov * d[None, :]
