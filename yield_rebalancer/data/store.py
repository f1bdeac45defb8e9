"""
Observation Store

Append-only time series of token prices, pool market states and hedge
instrument states, backed by the ledger database. Ingestion collaborators
append; the core only reads through get_latest_or_after / get_history.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from yield_rebalancer.core.errors import DataInconsistent, PersistenceFailure
from yield_rebalancer.data.entities import (
    NOT_YET_AVAILABLE,
    EntityKind,
    EntityRef,
    HedgeInstrument,
    HedgeInstrumentState,
    Market,
    MarketStateObservation,
    Observation,
    ObservationResult,
    Token,
    TokenPriceObservation,
)
from yield_rebalancer.ledger.schema import (
    HedgeInstrumentModel,
    HedgeInstrumentStateModel,
    MarketModel,
    MarketStateModel,
    TokenModel,
    TokenPriceModel,
)


_MARKET_STATE_FIELDS = [
    "borrowing_factor_long", "borrowing_factor_short",
    "pnl_long", "pnl_short", "pnl_net",
    "pool_long_amount", "pool_short_amount", "pool_long_usd", "pool_short_usd",
    "open_interest_long", "open_interest_short",
    "open_interest_long_via_tokens", "open_interest_short_via_tokens",
    "utilization", "swap_volume", "trading_volume",
    "fees_position", "fees_liquidation", "fees_swap", "fees_borrowing", "fees_total",
]


def _token_price_from_row(row: TokenPriceModel) -> TokenPriceObservation:
    return TokenPriceObservation(
        id=row.id,
        token_id=row.token_id,
        timestamp=row.timestamp,
        min_price=row.min_price,
        max_price=row.max_price,
        mid_price=row.mid_price,
    )


def _market_state_from_row(row: MarketStateModel) -> MarketStateObservation:
    values = {name: getattr(row, name) for name in _MARKET_STATE_FIELDS}
    return MarketStateObservation(id=row.id, market_id=row.market_id, timestamp=row.timestamp, **values)


def _hedge_state_from_row(row: HedgeInstrumentStateModel) -> HedgeInstrumentState:
    return HedgeInstrumentState(
        id=row.id,
        instrument_id=row.instrument_id,
        timestamp=row.timestamp,
        funding_rate=row.funding_rate,
        initial_margin_fraction=row.initial_margin_fraction,
        maintenance_margin_fraction=row.maintenance_margin_fraction,
        oracle_price=row.oracle_price,
        open_interest=row.open_interest,
    )


# kind -> (table, entity id column name, row converter)
_SERIES: Dict[EntityKind, tuple] = {
    EntityKind.TOKEN: (TokenPriceModel, "token_id", _token_price_from_row),
    EntityKind.POOL_MARKET: (MarketStateModel, "market_id", _market_state_from_row),
    EntityKind.HEDGE_INSTRUMENT: (HedgeInstrumentStateModel, "instrument_id", _hedge_state_from_row),
}


class ObservationStore:
    """
    SQL-backed observation store.

    Observations for one entity are monotonic in time; an append older than
    the entity's latest observation is rejected, never rewritten.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ------------------------
    # Reference data
    # ------------------------

    def register_token(self, address: str, symbol: str, decimals: int = 18) -> Token:
        def op(session: Session) -> TokenModel:
            row = session.scalar(select(TokenModel).where(TokenModel.address == address))
            if row is None:
                row = TokenModel(address=address, symbol=symbol, decimals=decimals)
                session.add(row)
                session.flush()
            return row

        row = self._write(op)
        return Token(id=row.id, address=row.address, symbol=row.symbol, decimals=row.decimals)

    def register_market(
        self,
        address: str,
        index_token_id: int,
        long_token_id: int,
        short_token_id: int,
        display_name: str = "",
    ) -> Market:
        def op(session: Session) -> MarketModel:
            row = session.scalar(select(MarketModel).where(MarketModel.address == address))
            if row is None:
                row = MarketModel(
                    address=address,
                    index_token_id=index_token_id,
                    long_token_id=long_token_id,
                    short_token_id=short_token_id,
                    display_name=display_name,
                )
                session.add(row)
                session.flush()
            return row

        return self._market_from_row(self._write(op))

    def register_hedge_instrument(self, ticker: str, underlying_symbol: str = "") -> HedgeInstrument:
        def op(session: Session) -> HedgeInstrumentModel:
            row = session.scalar(select(HedgeInstrumentModel).where(HedgeInstrumentModel.ticker == ticker))
            if row is None:
                row = HedgeInstrumentModel(ticker=ticker, underlying_symbol=underlying_symbol or ticker)
                session.add(row)
                session.flush()
            return row

        row = self._write(op)
        return HedgeInstrument(id=row.id, ticker=row.ticker, underlying_symbol=row.underlying_symbol or "")

    def list_markets(self) -> List[Market]:
        stmt = select(MarketModel).order_by(MarketModel.id)
        return self._read(lambda session: [self._market_from_row(r) for r in session.scalars(stmt).all()])

    def get_market(self, market_id: int) -> Optional[Market]:
        def op(session: Session) -> Optional[Market]:
            row = session.get(MarketModel, market_id)
            return self._market_from_row(row) if row else None

        return self._read(op)

    def get_token(self, token_id: int) -> Optional[Token]:
        def op(session: Session) -> Optional[Token]:
            row = session.get(TokenModel, token_id)
            if row is None:
                return None
            return Token(id=row.id, address=row.address, symbol=row.symbol, decimals=row.decimals)

        return self._read(op)

    def find_hedge_instrument(self, ticker: str) -> Optional[HedgeInstrument]:
        def op(session: Session) -> Optional[HedgeInstrument]:
            row = session.scalar(select(HedgeInstrumentModel).where(HedgeInstrumentModel.ticker == ticker))
            if row is None:
                return None
            return HedgeInstrument(id=row.id, ticker=row.ticker, underlying_symbol=row.underlying_symbol or "")

        return self._read(op)

    # ------------------------
    # Appends
    # ------------------------

    def append(self, observation: Observation) -> int:
        """Append one observation; returns its surrogate id."""
        entity = observation.entity
        model, id_column, _ = _SERIES[entity.kind]

        if isinstance(observation, TokenPriceObservation):
            row = TokenPriceModel(
                token_id=observation.token_id,
                timestamp=observation.timestamp,
                min_price=observation.min_price,
                max_price=observation.max_price,
                mid_price=observation.mid_price,
            )
        elif isinstance(observation, MarketStateObservation):
            values = {name: getattr(observation, name) for name in _MARKET_STATE_FIELDS}
            row = MarketStateModel(market_id=observation.market_id, timestamp=observation.timestamp, **values)
        else:
            row = HedgeInstrumentStateModel(
                instrument_id=observation.instrument_id,
                timestamp=observation.timestamp,
                funding_rate=observation.funding_rate,
                initial_margin_fraction=observation.initial_margin_fraction,
                maintenance_margin_fraction=observation.maintenance_margin_fraction,
                oracle_price=observation.oracle_price,
                open_interest=observation.open_interest,
            )

        def op(session: Session) -> int:
            latest = session.scalar(
                select(func.max(model.timestamp)).where(getattr(model, id_column) == entity.entity_id)
            )
            if latest is not None and observation.timestamp < latest:
                raise DataInconsistent(
                    f"{entity}: observation at {observation.timestamp.isoformat()} "
                    f"is older than latest {latest.isoformat()}"
                )
            session.add(row)
            session.flush()
            return row.id

        return self._write(op)

    # ------------------------
    # Reads
    # ------------------------

    def get_latest_or_after(self, entity: EntityRef, timestamp: datetime) -> ObservationResult:
        """
        Earliest observation of `entity` strictly after `timestamp`.

        Equal timestamps resolve to the lowest observation id.
        """
        model, id_column, convert = _SERIES[entity.kind]
        stmt = (
            select(model)
            .where(getattr(model, id_column) == entity.entity_id, model.timestamp > timestamp)
            .order_by(model.timestamp.asc(), model.id.asc())
            .limit(1)
        )

        def op(session: Session) -> ObservationResult:
            row = session.scalar(stmt)
            return convert(row) if row is not None else NOT_YET_AVAILABLE

        return self._read(op)

    def get_history(self, entity: EntityRef, start: datetime, end: datetime) -> List[Observation]:
        """Observations with start <= timestamp <= end, oldest first."""
        model, id_column, convert = _SERIES[entity.kind]
        stmt = (
            select(model)
            .where(
                getattr(model, id_column) == entity.entity_id,
                model.timestamp >= start,
                model.timestamp <= end,
            )
            .order_by(model.timestamp.asc(), model.id.asc())
        )
        return self._read(lambda session: [convert(r) for r in session.scalars(stmt).all()])

    # ------------------------
    # Helpers
    # ------------------------

    @staticmethod
    def _market_from_row(row: MarketModel) -> Market:
        return Market(
            id=row.id,
            address=row.address,
            index_token_id=row.index_token_id,
            long_token_id=row.long_token_id,
            short_token_id=row.short_token_id,
            display_name=row.display_name or "",
        )

    def _read(self, op: Callable[[Session], object]):
        try:
            with self.session_factory() as session:
                return op(session)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"observation store read failed: {e}") from e

    def _write(self, op: Callable[[Session], object]):
        try:
            with self.session_factory.begin() as session:
                return op(session)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"observation store write failed: {e}") from e
