"""
Strategy Optimizer

Turns an aligned observation set plus the previous run's weights into a
strategy run: per-market target weights, a hedge instruction and the
portfolio's expected return / volatility / Sharpe.
"""

import math
from typing import Dict, List, Optional

import numpy as np

from yield_rebalancer.core.config import Config
from yield_rebalancer.core.errors import DataUnavailable
from yield_rebalancer.strategy.estimators import (
    covariance_matrix,
    directional_exposure,
    expected_return_bps,
    pool_return_series,
)
from yield_rebalancer.strategy.solver import solve_mean_variance
from yield_rebalancer.strategy.types import (
    HedgeInstruction,
    OptimizationResult,
    OptimizerInput,
    StrategyRun,
    StrategyTarget,
)


class StrategyOptimizer:
    """
    Mean-variance allocation across pool markets with a directional hedge.

    Steps:
    1. Expected return per market (fees + borrowing - trader pnl drift)
    2. Shrunk, utilization-scaled covariance of pool returns
    3. Constrained QP: non-negative, budget = 1 - reserved fraction,
       per-market concentration cap, per-market turnover cap vs previous run
    4. Hedge sized against net directional exposure, bounded by margin
    5. Aggregate return, volatility, Sharpe (undefined at ~zero volatility)
    """

    def __init__(self, config: Config):
        self.config = config

    def optimize(self, inputs: OptimizerInput, previous_weights: Optional[Dict[int, float]] = None) -> OptimizationResult:
        """
        Compute a strategy run.

        Args:
            inputs: Aligned per-market inputs and hedge instrument state
            previous_weights: market_id -> weight from the last run; empty or
                None on cold start (no turnover constraint)

        Raises:
            DataUnavailable: a market has no usable index price or pool value
            SolverNonConvergence: the QP is infeasible or did not converge
        """
        cfg = self.config.optimizer
        previous_weights = dict(previous_weights or {})
        markets = sorted(inputs.markets, key=lambda m: m.market.id)
        if not markets:
            raise DataUnavailable("no pool markets in optimizer input")

        missing_price = [
            m.market.id for m in markets
            if m.index_price is None or not (m.index_price.mid_price > 0)
        ]
        if missing_price:
            raise DataUnavailable(f"missing index price for markets {missing_price}", missing=missing_price)

        market_ids = [m.market.id for m in markets]

        # Step 1: expected returns
        mu_list: List[float] = []
        for m in markets:
            r = expected_return_bps(m.history, cfg.ewma_alpha)
            if r is None or not math.isfinite(r):
                raise DataUnavailable(f"market {m.market.id} has no positive pool value", missing=[m.market.id])
            mu_list.append(r)
        mu = np.array(mu_list, dtype=float)

        # Step 2: covariance
        series = [pool_return_series(m.history) for m in markets]
        utilizations = [m.current.utilization for m in markets]
        cov = covariance_matrix(
            series,
            utilizations,
            variance_floor=cfg.variance_floor_bps2,
            utilization_penalty=cfg.utilization_penalty,
            min_history=cfg.min_history,
        )

        # Step 3: constrained solve
        budget = 1.0 - cfg.reserved_fraction
        prev = np.array([previous_weights.get(mid, 0.0) for mid in market_ids], dtype=float)
        lower, upper = self.weight_bounds(prev, cold_start=not previous_weights)
        result = solve_mean_variance(
            mu,
            cov,
            risk_aversion=cfg.risk_aversion,
            budget=budget,
            lower=lower,
            upper=upper,
            tolerance=cfg.tolerance,
            max_iterations=cfg.max_iterations,
            initial=prev if previous_weights else None,
        )
        w = result.weights
        print(f"[Optimizer] Solved {len(w)} markets in {result.iterations} iterations (objective={result.objective:.4f})")

        # Step 4: hedge
        exposures = np.array([directional_exposure(m.current) for m in markets], dtype=float)
        hedge = self.size_hedge(inputs, w, exposures)

        # Step 5: aggregates
        port_return = float(mu @ w)
        port_var = float(w @ cov @ w)
        port_vol = math.sqrt(max(port_var, 0.0))
        sharpe = sharpe_ratio(port_return, port_vol)

        # Markets dropped from the universe are sold down to zero.
        deltas = [abs(w[i] - prev[i]) for i in range(len(w))]
        deltas += [abs(v) for mid, v in previous_weights.items() if mid not in market_ids]
        is_dust = max(deltas, default=0.0) < cfg.dust_weight

        run = StrategyRun(
            timestamp=inputs.reference_time,
            strategy_version=self.config.ledger.strategy_version,
            total_weight=float(w.sum()),
            hedge_weight=hedge.hedge_weight,
            expected_return_bps=port_return,
            volatility_bps=port_vol,
            sharpe=sharpe,
        )
        targets = [
            StrategyTarget(
                market_id=mid,
                target_weight=float(w[i]),
                expected_return_bps=float(mu[i]),
                variance_bps=float(cov[i, i]),
            )
            for i, mid in enumerate(market_ids)
        ]

        if is_dust:
            print("[Optimizer] All weight deltas below dust threshold; no trades will be generated")

        return OptimizationResult(
            run=run,
            targets=targets,
            hedge=hedge,
            weights={mid: float(w[i]) for i, mid in enumerate(market_ids)},
            exposures={mid: float(exposures[i]) for i, mid in enumerate(market_ids)},
            iterations=result.iterations,
            is_dust=is_dust,
        )

    def weight_bounds(self, prev: np.ndarray, cold_start: bool):
        """Per-market [lower, upper] from the concentration and turnover caps."""
        cfg = self.config.optimizer
        lower = np.zeros_like(prev)
        upper = np.full_like(prev, cfg.concentration_cap)
        if not cold_start:
            lower = np.maximum(lower, prev - cfg.turnover_cap)
            upper = np.minimum(upper, prev + cfg.turnover_cap)
        return lower, upper

    def size_hedge(self, inputs: OptimizerInput, weights: np.ndarray, exposures: np.ndarray) -> HedgeInstruction:
        """
        Short (or long) the hedge perp against the portfolio's net directional
        exposure, limited to what the reserved fraction can margin.
        """
        cfg = self.config.optimizer
        state = inputs.hedge_state
        if not (state.oracle_price > 0):
            raise DataUnavailable(
                f"hedge instrument {inputs.hedge_instrument.ticker} has no oracle price",
                missing=[state.instrument_id],
            )

        net_exposure = float(weights @ exposures) if len(weights) else 0.0
        max_abs = None
        if state.initial_margin_fraction > 0:
            max_abs = cfg.reserved_fraction / state.initial_margin_fraction
        hedge_weight, capped = hedge_weight_for(net_exposure, max_abs)
        if capped:
            print(f"[Optimizer] Hedge capped by margin at {hedge_weight:.4f} (exposure {net_exposure:.4f})")

        return HedgeInstruction(
            instrument_id=state.instrument_id,
            ticker=inputs.hedge_instrument.ticker,
            hedge_weight=hedge_weight,
            oracle_price=state.oracle_price,
            size_per_usd=hedge_weight / state.oracle_price,
            margin_capped=capped,
            max_weight=max_abs,
        )


def hedge_weight_for(net_exposure: float, max_abs: Optional[float]):
    """Offset net exposure, clipped to the margin bound. Returns (weight, capped)."""
    hedge_weight = -net_exposure
    if max_abs is not None and abs(hedge_weight) > max_abs:
        return math.copysign(max_abs, hedge_weight), True
    return hedge_weight, False


def sharpe_ratio(expected_return: float, volatility: float, min_volatility: float = 1e-12) -> Optional[float]:
    """Return / volatility, or None when volatility is effectively zero."""
    if not math.isfinite(volatility) or volatility < min_volatility:
        return None
    value = expected_return / volatility
    return value if math.isfinite(value) else None
