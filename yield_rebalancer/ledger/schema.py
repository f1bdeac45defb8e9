"""
Relational layout for observations, strategy runs, trades and snapshots.

Surrogate integer ids everywhere. Deleting a strategy run cascades its
targets and nulls the run reference on its trades, so the trade audit
trail survives.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, also on backends without tz support (SQLite)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ledger tables."""
    pass


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

class TokenModel(Base):
    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)


class MarketModel(Base):
    __tablename__ = "markets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    index_token_id: Mapped[int] = mapped_column(ForeignKey("tokens.id"), nullable=False)
    long_token_id: Mapped[int] = mapped_column(ForeignKey("tokens.id"), nullable=False)
    short_token_id: Mapped[int] = mapped_column(ForeignKey("tokens.id"), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(128))


class HedgeInstrumentModel(Base):
    __tablename__ = "hedge_instruments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticker: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    underlying_symbol: Mapped[Optional[str]] = mapped_column(String(32))


# ---------------------------------------------------------------------------
# Observations (append-only)
# ---------------------------------------------------------------------------

class TokenPriceModel(Base):
    __tablename__ = "token_prices"
    __table_args__ = (
        Index("idx_token_prices_token_timestamp", "token_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_id: Mapped[int] = mapped_column(ForeignKey("tokens.id"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    min_price: Mapped[float] = mapped_column(Float, nullable=False)
    max_price: Mapped[float] = mapped_column(Float, nullable=False)
    mid_price: Mapped[float] = mapped_column(Float, nullable=False)


class MarketStateModel(Base):
    __tablename__ = "market_states"
    __table_args__ = (
        Index("idx_market_states_market_timestamp", "market_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(ForeignKey("markets.id"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    borrowing_factor_long: Mapped[float] = mapped_column(Float, nullable=False)
    borrowing_factor_short: Mapped[float] = mapped_column(Float, nullable=False)

    pnl_long: Mapped[float] = mapped_column(Float, nullable=False)
    pnl_short: Mapped[float] = mapped_column(Float, nullable=False)
    pnl_net: Mapped[float] = mapped_column(Float, nullable=False)

    pool_long_amount: Mapped[float] = mapped_column(Float, nullable=False)
    pool_short_amount: Mapped[float] = mapped_column(Float, nullable=False)
    pool_long_usd: Mapped[float] = mapped_column(Float, nullable=False)
    pool_short_usd: Mapped[float] = mapped_column(Float, nullable=False)

    open_interest_long: Mapped[float] = mapped_column(Float, nullable=False)
    open_interest_short: Mapped[float] = mapped_column(Float, nullable=False)
    open_interest_long_via_tokens: Mapped[float] = mapped_column(Float, nullable=False)
    open_interest_short_via_tokens: Mapped[float] = mapped_column(Float, nullable=False)

    utilization: Mapped[float] = mapped_column(Float, nullable=False)

    swap_volume: Mapped[float] = mapped_column(Float, nullable=False)
    trading_volume: Mapped[float] = mapped_column(Float, nullable=False)

    fees_position: Mapped[float] = mapped_column(Float, nullable=False)
    fees_liquidation: Mapped[float] = mapped_column(Float, nullable=False)
    fees_swap: Mapped[float] = mapped_column(Float, nullable=False)
    fees_borrowing: Mapped[float] = mapped_column(Float, nullable=False)
    fees_total: Mapped[float] = mapped_column(Float, nullable=False)


class HedgeInstrumentStateModel(Base):
    __tablename__ = "hedge_instrument_states"
    __table_args__ = (
        Index("idx_hedge_instrument_states_timestamp", "instrument_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instrument_id: Mapped[int] = mapped_column(ForeignKey("hedge_instruments.id"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    funding_rate: Mapped[float] = mapped_column(Float, nullable=False)
    initial_margin_fraction: Mapped[float] = mapped_column(Float, nullable=False)
    maintenance_margin_fraction: Mapped[float] = mapped_column(Float, nullable=False)
    oracle_price: Mapped[float] = mapped_column(Float, nullable=False)
    open_interest: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


# ---------------------------------------------------------------------------
# Strategy runs and execution audit
# ---------------------------------------------------------------------------

class StrategyRunModel(Base):
    __tablename__ = "strategy_runs"
    __table_args__ = (
        Index("idx_strategy_runs_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    strategy_version: Mapped[str] = mapped_column(String(64), nullable=False)
    total_weight: Mapped[float] = mapped_column(Float, nullable=False)
    hedge_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    expected_return_bps: Mapped[float] = mapped_column(Float, nullable=False)
    volatility_bps: Mapped[float] = mapped_column(Float, nullable=False)
    sharpe: Mapped[Optional[float]] = mapped_column(Float)  # NULL = undefined

    targets: Mapped[list["StrategyTargetModel"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="StrategyTargetModel.market_id",
    )


class StrategyTargetModel(Base):
    __tablename__ = "strategy_targets"
    __table_args__ = (
        Index("idx_strategy_targets_run", "strategy_run_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    strategy_run_id: Mapped[int] = mapped_column(
        ForeignKey("strategy_runs.id", ondelete="CASCADE"), nullable=False
    )
    market_id: Mapped[int] = mapped_column(ForeignKey("markets.id"), nullable=False)
    target_weight: Mapped[float] = mapped_column(Float, nullable=False)
    expected_return_bps: Mapped[Optional[float]] = mapped_column(Float)
    variance_bps: Mapped[Optional[float]] = mapped_column(Float)

    run: Mapped[StrategyRunModel] = relationship(back_populates="targets")


class TradeModel(Base):
    __tablename__ = "trades"
    __table_args__ = (
        Index("idx_trades_timestamp", "timestamp"),
        Index("idx_trades_run", "strategy_run_id"),
        CheckConstraint(
            "status <> 'confirmed' OR tx_hash IS NOT NULL",
            name="ck_trades_confirmed_has_tx_hash",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    account: Mapped[str] = mapped_column(String(64), nullable=False)
    strategy_run_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("strategy_runs.id", ondelete="SET NULL")
    )
    market_id: Mapped[Optional[int]] = mapped_column(ForeignKey("markets.id"))
    ticker: Mapped[Optional[str]] = mapped_column(String(32))  # hedge orders only
    size: Mapped[Optional[float]] = mapped_column(Float)  # signed contracts, hedge orders only
    amount_in: Mapped[Optional[float]] = mapped_column(Float)
    amount_out: Mapped[Optional[float]] = mapped_column(Float)
    usd_value: Mapped[Optional[float]] = mapped_column(Float)
    fee_usd: Mapped[Optional[float]] = mapped_column(Float)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[Optional[str]] = mapped_column(Text)


class PortfolioSnapshotModel(Base):
    __tablename__ = "portfolio_snapshots"
    __table_args__ = (
        Index("idx_portfolio_snapshots_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    strategy_run_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("strategy_runs.id", ondelete="SET NULL")
    )
    total_value_usd: Mapped[float] = mapped_column(Float, nullable=False)
    market_value_usd: Mapped[float] = mapped_column(Float, nullable=False)
    asset_value_usd: Mapped[float] = mapped_column(Float, nullable=False)
    hedge_value_usd: Mapped[float] = mapped_column(Float, nullable=False)
    pnl_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    positions: Mapped[list["PositionSnapshotModel"]] = relationship(
        back_populates="portfolio_snapshot",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PositionSnapshotModel(Base):
    __tablename__ = "position_snapshots"
    __table_args__ = (
        Index("idx_position_snapshots_snapshot", "portfolio_snapshot_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    portfolio_snapshot_id: Mapped[int] = mapped_column(
        ForeignKey("portfolio_snapshots.id", ondelete="CASCADE"), nullable=False
    )
    position_type: Mapped[str] = mapped_column(String(16), nullable=False)  # market | asset | hedge
    market_id: Mapped[Optional[int]] = mapped_column(ForeignKey("markets.id"))
    token_id: Mapped[Optional[int]] = mapped_column(ForeignKey("tokens.id"))
    symbol: Mapped[Optional[str]] = mapped_column(String(32))
    size: Mapped[float] = mapped_column(Float, nullable=False)
    usd_value: Mapped[float] = mapped_column(Float, nullable=False)

    portfolio_snapshot: Mapped[PortfolioSnapshotModel] = relationship(back_populates="positions")


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------

def make_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the ledger database.

    SQLite does not enforce foreign keys unless asked per connection, and the
    run-deletion cascade depends on them.
    """
    kwargs = {}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, usable from the aligner worker threads
        kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    engine = create_engine(database_url, echo=echo, future=True, **kwargs)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_sqlite_fks(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_schema(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(engine)
