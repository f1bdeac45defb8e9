"""
Reference data and observation types shared by the store, aligner and optimizer.

Observations are append-only and immutable once recorded, so every type
here is a frozen dataclass.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class EntityKind(str, Enum):
    """Closed set of entities the aligner knows how to observe."""

    TOKEN = "token"
    POOL_MARKET = "pool_market"
    HEDGE_INSTRUMENT = "hedge_instrument"


@dataclass(frozen=True, order=True)
class EntityRef:
    """Tagged reference to one observed entity (kind + surrogate id)."""

    kind: EntityKind
    entity_id: int

    @classmethod
    def token(cls, token_id: int) -> "EntityRef":
        return cls(EntityKind.TOKEN, token_id)

    @classmethod
    def market(cls, market_id: int) -> "EntityRef":
        return cls(EntityKind.POOL_MARKET, market_id)

    @classmethod
    def hedge(cls, instrument_id: int) -> "EntityRef":
        return cls(EntityKind.HEDGE_INSTRUMENT, instrument_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.entity_id}"


@dataclass(frozen=True)
class Token:
    id: int
    address: str
    symbol: str
    decimals: int = 18


@dataclass(frozen=True)
class Market:
    """Pool market backed by (index, long, short) tokens."""

    id: int
    address: str
    index_token_id: int
    long_token_id: int
    short_token_id: int
    display_name: str = ""


@dataclass(frozen=True)
class HedgeInstrument:
    id: int
    ticker: str  # e.g. "ETH"
    underlying_symbol: str = ""


@dataclass(frozen=True)
class TokenPriceObservation:
    token_id: int
    timestamp: datetime
    min_price: float
    max_price: float
    mid_price: float
    id: Optional[int] = None

    @property
    def entity(self) -> EntityRef:
        return EntityRef.token(self.token_id)


@dataclass(frozen=True)
class MarketStateObservation:
    """One polled state of a pool market (USD amounts unless noted)."""

    market_id: int
    timestamp: datetime

    borrowing_factor_long: float = 0.0
    borrowing_factor_short: float = 0.0

    pnl_long: float = 0.0
    pnl_short: float = 0.0
    pnl_net: float = 0.0

    pool_long_amount: float = 0.0  # token units
    pool_short_amount: float = 0.0  # token units
    pool_long_usd: float = 0.0
    pool_short_usd: float = 0.0

    open_interest_long: float = 0.0
    open_interest_short: float = 0.0
    open_interest_long_via_tokens: float = 0.0
    open_interest_short_via_tokens: float = 0.0

    utilization: float = 0.0

    swap_volume: float = 0.0
    trading_volume: float = 0.0

    fees_position: float = 0.0
    fees_liquidation: float = 0.0
    fees_swap: float = 0.0
    fees_borrowing: float = 0.0
    fees_total: float = 0.0

    id: Optional[int] = None

    @property
    def entity(self) -> EntityRef:
        return EntityRef.market(self.market_id)

    @property
    def pool_value_usd(self) -> float:
        return self.pool_long_usd + self.pool_short_usd

    @property
    def net_oi_via_tokens(self) -> float:
        return self.open_interest_long_via_tokens - self.open_interest_short_via_tokens


@dataclass(frozen=True)
class HedgeInstrumentState:
    instrument_id: int
    timestamp: datetime
    funding_rate: float
    initial_margin_fraction: float
    maintenance_margin_fraction: float
    oracle_price: float
    open_interest: float = 0.0
    id: Optional[int] = None

    @property
    def entity(self) -> EntityRef:
        return EntityRef.hedge(self.instrument_id)


Observation = Union[TokenPriceObservation, MarketStateObservation, HedgeInstrumentState]


class _NotYetAvailable:
    """Sentinel returned by a source when no qualifying observation exists."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_YET_AVAILABLE"

    def __bool__(self) -> bool:
        return False


NOT_YET_AVAILABLE = _NotYetAvailable()

ObservationResult = Union[Observation, _NotYetAvailable]
