"""
Trade data structures (Trade, venue poll results, Holdings, snapshots).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union


class ExecutionMode(str, Enum):
    PAPER = "paper"
    LIVE = "live"


class TradeStatus(str, Enum):
    """planned -> submitted -> confirmed | failed"""

    PLANNED = "planned"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TradeStatus.CONFIRMED, TradeStatus.FAILED)


class TradeAction(str, Enum):
    DEPOSIT = "gm_deposit"
    WITHDRAWAL = "gm_withdrawal"
    HEDGE_ORDER = "hedge_order"


@dataclass
class Trade:
    """
    One realized action against a venue.

    Pool trades carry `usd_value` (always positive; direction comes from
    `action`). Hedge trades carry a signed contract `size` (negative = sell).
    Only `status`, `tx_hash`, `attempts`, `detail`, `fee_usd` and
    `filled_size` change after the trade is recorded. `filled_size` sums the
    contracts a hedge order has filled across attempts.
    """

    action: TradeAction
    account: str
    usd_value: float
    market_id: Optional[int] = None
    ticker: Optional[str] = None
    size: float = 0.0
    amount_in: float = 0.0
    amount_out: float = 0.0
    fee_usd: float = 0.0
    filled_size: float = 0.0
    tx_hash: Optional[str] = None
    status: TradeStatus = TradeStatus.PLANNED
    attempts: int = 0
    detail: Optional[str] = None
    strategy_run_id: Optional[int] = None
    mode: ExecutionMode = ExecutionMode.PAPER
    timestamp: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def frees_capital(self) -> bool:
        return self.action == TradeAction.WITHDRAWAL

    @property
    def is_hedge(self) -> bool:
        return self.action == TradeAction.HEDGE_ORDER

    @property
    def remaining_size(self) -> float:
        """Signed hedge contracts still to fill."""
        return self.size - self.filled_size

    def describe(self) -> str:
        if self.is_hedge:
            side = "Buy" if self.size > 0 else "Sell"
            return f"{self.action.value} {side} {abs(self.size):g} {self.ticker}"
        return f"{self.action.value} market={self.market_id} ${self.usd_value:,.2f}"


@dataclass(frozen=True)
class PendingHandle:
    """Venue-side reference for a submitted trade."""

    reference: str
    submitted_at: float  # monotonic seconds
    trade_id: Optional[int] = None


@dataclass(frozen=True)
class Confirmed:
    tx_hash: str
    fee_usd: float = 0.0
    filled_size: Optional[float] = None  # hedge fills; None = as requested


@dataclass(frozen=True)
class Failed:
    reason: str
    # A canceled or rejected IOC order can still have filled part of its size.
    filled_size: float = 0.0
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class Pending:
    pass


PollResult = Union[Confirmed, Failed, Pending]


@dataclass
class Holdings:
    """
    Realized holdings at a point in time.

    Pool positions are valued in USD. The hedge is a perp position in
    contracts; its margin sits inside `cash_usd`, so it does not add to
    `total_value_usd`.
    """

    cash_usd: float = 0.0
    market_values: Dict[int, float] = field(default_factory=dict)
    hedge_size: float = 0.0
    hedge_price: float = 0.0
    hedge_ticker: Optional[str] = None

    @property
    def market_value_usd(self) -> float:
        return sum(self.market_values.values())

    @property
    def hedge_notional_usd(self) -> float:
        return self.hedge_size * self.hedge_price

    @property
    def total_value_usd(self) -> float:
        return self.cash_usd + self.market_value_usd

    def weights(self) -> Dict[int, float]:
        total = self.total_value_usd
        if total <= 0:
            return {}
        return {mid: value / total for mid, value in self.market_values.items()}

    def copy(self) -> "Holdings":
        return Holdings(
            cash_usd=self.cash_usd,
            market_values=dict(self.market_values),
            hedge_size=self.hedge_size,
            hedge_price=self.hedge_price,
            hedge_ticker=self.hedge_ticker,
        )

    def apply(self, trade: Trade, result: Union[Confirmed, Failed]) -> None:
        """Move a confirmed trade, or the filled part of a failed hedge order, into the holdings."""
        if isinstance(result, Failed):
            if trade.is_hedge:
                self.hedge_size += result.filled_size
            return
        fee = result.fee_usd
        if trade.action == TradeAction.DEPOSIT:
            self.market_values[trade.market_id] = self.market_values.get(trade.market_id, 0.0) + trade.usd_value
            self.cash_usd -= trade.usd_value + fee
        elif trade.action == TradeAction.WITHDRAWAL:
            remaining = self.market_values.get(trade.market_id, 0.0) - trade.usd_value
            if abs(remaining) < 1e-9:
                self.market_values.pop(trade.market_id, None)
            else:
                self.market_values[trade.market_id] = remaining
            self.cash_usd += trade.usd_value - fee
        else:
            filled = trade.remaining_size if result.filled_size is None else result.filled_size
            self.hedge_size += filled
            self.cash_usd -= fee


@dataclass
class PositionSnapshot:
    position_type: str  # "market" | "asset" | "hedge"
    usd_value: float
    size: float = 0.0
    market_id: Optional[int] = None
    token_id: Optional[int] = None
    symbol: Optional[str] = None


@dataclass
class PortfolioSnapshot:
    timestamp: datetime
    mode: ExecutionMode
    total_value_usd: float
    market_value_usd: float
    asset_value_usd: float
    hedge_value_usd: float
    positions: List[PositionSnapshot] = field(default_factory=list)
    pnl_usd: float = 0.0
    strategy_run_id: Optional[int] = None
    id: Optional[int] = None

    @classmethod
    def from_holdings(cls, holdings: Holdings, timestamp: datetime, mode: ExecutionMode) -> "PortfolioSnapshot":
        positions = [
            PositionSnapshot(position_type="market", market_id=mid, usd_value=value, size=value)
            for mid, value in sorted(holdings.market_values.items())
        ]
        positions.append(PositionSnapshot(position_type="asset", symbol="USD", usd_value=holdings.cash_usd, size=holdings.cash_usd))
        if holdings.hedge_size != 0.0:
            positions.append(PositionSnapshot(
                position_type="hedge",
                symbol=holdings.hedge_ticker,
                size=holdings.hedge_size,
                usd_value=holdings.hedge_notional_usd,
            ))
        return cls(
            timestamp=timestamp,
            mode=mode,
            total_value_usd=holdings.total_value_usd,
            market_value_usd=holdings.market_value_usd,
            asset_value_usd=holdings.cash_usd,
            hedge_value_usd=holdings.hedge_notional_usd,
            positions=positions,
        )

    def to_holdings(self) -> Holdings:
        holdings = Holdings(cash_usd=self.asset_value_usd)
        for p in self.positions:
            if p.position_type == "market" and p.market_id is not None:
                holdings.market_values[p.market_id] = p.usd_value
            elif p.position_type == "hedge":
                holdings.hedge_size = p.size
                holdings.hedge_ticker = p.symbol
                holdings.hedge_price = p.usd_value / p.size if p.size else 0.0
        return holdings
