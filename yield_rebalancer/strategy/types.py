"""
Strategy data structures (optimizer inputs, run, targets, hedge instruction).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from yield_rebalancer.data.entities import (
    HedgeInstrument,
    HedgeInstrumentState,
    Market,
    MarketStateObservation,
    TokenPriceObservation,
)


@dataclass
class MarketInput:
    """
    Everything the optimizer needs about one pool market.

    `history` is oldest-first and ends with the aligned observation.
    """

    market: Market
    history: List[MarketStateObservation]
    index_price: Optional[TokenPriceObservation]

    @property
    def current(self) -> MarketStateObservation:
        return self.history[-1]


@dataclass
class OptimizerInput:
    reference_time: datetime
    markets: List[MarketInput]
    hedge_instrument: HedgeInstrument
    hedge_state: HedgeInstrumentState


@dataclass(frozen=True)
class StrategyRun:
    """One optimizer execution. Immutable; corrections are new runs."""

    timestamp: datetime
    strategy_version: str
    total_weight: float
    hedge_weight: float
    expected_return_bps: float
    volatility_bps: float
    sharpe: Optional[float]  # None = undefined (volatility ~ 0)
    id: Optional[int] = None


@dataclass(frozen=True)
class StrategyTarget:
    market_id: int
    target_weight: float
    expected_return_bps: float
    variance_bps: float
    strategy_run_id: Optional[int] = None


@dataclass(frozen=True)
class HedgeInstruction:
    """
    Hedge notional as a fraction of deployable capital (negative = short).

    `size_per_usd` converts a USD capital amount into contracts at the
    aligned oracle price.
    """

    instrument_id: int
    ticker: str
    hedge_weight: float
    oracle_price: float
    size_per_usd: float
    margin_capped: bool = False
    max_weight: Optional[float] = None  # |hedge_weight| bound from margin; None = unbounded


@dataclass
class OptimizationResult:
    run: StrategyRun
    targets: List[StrategyTarget]
    hedge: HedgeInstruction
    weights: Dict[int, float]
    exposures: Dict[int, float] = field(default_factory=dict)  # directional exposure per unit weight
    iterations: int = 0
    is_dust: bool = False  # every weight delta below the dust threshold
