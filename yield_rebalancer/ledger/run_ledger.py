"""
Run Ledger

Durable record of strategy runs, their targets, trade state transitions
and the portfolio snapshots that seed the next cycle.

- A run and all of its targets are written in one transaction
- Trade transitions are appended individually as they happen
- The holdings baseline is only ever written by a cycle's final snapshot
"""

import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from yield_rebalancer.core.errors import DataInconsistent, PersistenceFailure
from yield_rebalancer.execution.orders import (
    ExecutionMode,
    Holdings,
    PortfolioSnapshot,
    PositionSnapshot,
    Trade,
    TradeAction,
    TradeStatus,
)
from yield_rebalancer.ledger.schema import (
    PortfolioSnapshotModel,
    PositionSnapshotModel,
    StrategyRunModel,
    StrategyTargetModel,
    TradeModel,
)
from yield_rebalancer.strategy.types import StrategyRun, StrategyTarget

WEIGHT_TOLERANCE = 1e-6

_ALLOWED_TRANSITIONS = {
    TradeStatus.PLANNED: {TradeStatus.SUBMITTED, TradeStatus.FAILED},
    TradeStatus.SUBMITTED: {TradeStatus.SUBMITTED, TradeStatus.CONFIRMED, TradeStatus.FAILED},
    TradeStatus.CONFIRMED: set(),
    TradeStatus.FAILED: set(),
}


class RunLedger:
    """
    SQLAlchemy-backed ledger.

    Writes are serialized through one lock so coordinator threads for
    different accounts can record transitions against a shared connection.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._lock = threading.RLock()

    # ------------------------
    # Strategy runs
    # ------------------------

    def record_run(self, run: StrategyRun, targets: Sequence[StrategyTarget]) -> int:
        """
        Write a run and its targets atomically.

        Raises:
            DataInconsistent: target weights do not sum to the run's total weight
            PersistenceFailure: the transaction failed (nothing was written)
        """
        total = sum(t.target_weight for t in targets)
        if abs(total - run.total_weight) > WEIGHT_TOLERANCE:
            raise DataInconsistent(
                f"target weights sum to {total:.9f}, run records {run.total_weight:.9f}"
            )

        def op(session: Session) -> int:
            row = StrategyRunModel(
                timestamp=run.timestamp,
                strategy_version=run.strategy_version,
                total_weight=run.total_weight,
                hedge_weight=run.hedge_weight,
                expected_return_bps=run.expected_return_bps,
                volatility_bps=run.volatility_bps,
                sharpe=run.sharpe,
            )
            row.targets = [
                StrategyTargetModel(
                    market_id=t.market_id,
                    target_weight=t.target_weight,
                    expected_return_bps=t.expected_return_bps,
                    variance_bps=t.variance_bps,
                )
                for t in targets
            ]
            session.add(row)
            session.flush()
            return row.id

        run_id = self._write(op)
        print(f"[Ledger] Recorded run {run_id} ({len(targets)} targets, total weight {run.total_weight:.6f})")
        return run_id

    def latest_run(self) -> Optional[StrategyRun]:
        stmt = select(StrategyRunModel).order_by(StrategyRunModel.timestamp.desc(), StrategyRunModel.id.desc()).limit(1)
        with self.session_factory() as session:
            row = session.scalar(stmt)
            return self._run_from_row(row) if row else None

    def get_run(self, run_id: int) -> Optional[StrategyRun]:
        with self.session_factory() as session:
            row = session.get(StrategyRunModel, run_id)
            return self._run_from_row(row) if row else None

    def targets_for_run(self, run_id: int) -> List[StrategyTarget]:
        stmt = (
            select(StrategyTargetModel)
            .where(StrategyTargetModel.strategy_run_id == run_id)
            .order_by(StrategyTargetModel.market_id)
        )
        with self.session_factory() as session:
            return [
                StrategyTarget(
                    market_id=r.market_id,
                    target_weight=r.target_weight,
                    expected_return_bps=r.expected_return_bps or 0.0,
                    variance_bps=r.variance_bps or 0.0,
                    strategy_run_id=r.strategy_run_id,
                )
                for r in session.scalars(stmt).all()
            ]

    def delete_run(self, run_id: int) -> bool:
        """Delete a run; targets cascade, trades and snapshots keep their rows with a null run."""

        def op(session: Session) -> int:
            return session.execute(delete(StrategyRunModel).where(StrategyRunModel.id == run_id)).rowcount

        deleted = self._write(op)
        if deleted:
            print(f"[Ledger] Deleted run {run_id}")
        return bool(deleted)

    # ------------------------
    # Trades
    # ------------------------

    def append_trade(self, trade: Trade) -> int:
        """Record a planned trade; sets and returns trade.id."""
        timestamp = trade.timestamp or datetime.now(timezone.utc)

        def op(session: Session) -> int:
            row = TradeModel(
                timestamp=timestamp,
                mode=trade.mode.value,
                action_type=trade.action.value,
                account=trade.account,
                strategy_run_id=trade.strategy_run_id,
                market_id=trade.market_id,
                ticker=trade.ticker,
                size=trade.size if trade.is_hedge else None,
                amount_in=trade.amount_in,
                amount_out=trade.amount_out,
                usd_value=trade.usd_value,
                fee_usd=trade.fee_usd,
                tx_hash=trade.tx_hash,
                status=trade.status.value,
                attempts=trade.attempts,
                details=trade.detail,
            )
            session.add(row)
            session.flush()
            return row.id

        trade.id = self._write(op)
        trade.timestamp = timestamp
        return trade.id

    def update_trade_status(
        self,
        trade_id: int,
        status: TradeStatus,
        tx_hash: Optional[str] = None,
        detail: Optional[str] = None,
        attempts: Optional[int] = None,
        fee_usd: Optional[float] = None,
    ) -> None:
        """
        Append a status transition. Terminal statuses never change again.

        Raises:
            ValueError: illegal transition (e.g. out of a terminal status)
            PersistenceFailure: write failed, including a confirmed status
                without a transaction reference
        """

        def op(session: Session) -> None:
            row = session.get(TradeModel, trade_id)
            if row is None:
                raise ValueError(f"unknown trade {trade_id}")
            current = TradeStatus(row.status)
            if status not in _ALLOWED_TRANSITIONS[current]:
                raise ValueError(f"trade {trade_id}: illegal transition {current.value} -> {status.value}")
            row.status = status.value
            if tx_hash is not None:
                row.tx_hash = tx_hash
            if detail is not None:
                row.details = detail
            if attempts is not None:
                row.attempts = attempts
            if fee_usd is not None:
                row.fee_usd = fee_usd

        self._write(op)

    def trades_for_run(self, run_id: int) -> List[Trade]:
        stmt = select(TradeModel).where(TradeModel.strategy_run_id == run_id).order_by(TradeModel.id)
        with self.session_factory() as session:
            return [self._trade_from_row(r) for r in session.scalars(stmt).all()]

    def get_trade(self, trade_id: int) -> Optional[Trade]:
        with self.session_factory() as session:
            row = session.get(TradeModel, trade_id)
            return self._trade_from_row(row) if row else None

    # ------------------------
    # Snapshots / holdings
    # ------------------------

    def record_snapshot(self, run_id: Optional[int], snapshot: PortfolioSnapshot) -> int:
        """Write a portfolio snapshot and its positions in one transaction; pnl is vs the previous snapshot."""

        def op(session: Session) -> int:
            previous = session.scalar(self._latest_snapshot_stmt())
            pnl = snapshot.total_value_usd - previous.total_value_usd if previous else 0.0
            row = PortfolioSnapshotModel(
                timestamp=snapshot.timestamp,
                mode=snapshot.mode.value,
                strategy_run_id=run_id,
                total_value_usd=snapshot.total_value_usd,
                market_value_usd=snapshot.market_value_usd,
                asset_value_usd=snapshot.asset_value_usd,
                hedge_value_usd=snapshot.hedge_value_usd,
                pnl_usd=pnl,
            )
            row.positions = [
                PositionSnapshotModel(
                    position_type=p.position_type,
                    market_id=p.market_id,
                    token_id=p.token_id,
                    symbol=p.symbol,
                    size=p.size,
                    usd_value=p.usd_value,
                )
                for p in snapshot.positions
            ]
            session.add(row)
            session.flush()
            snapshot.pnl_usd = pnl
            return row.id

        snapshot.id = self._write(op)
        snapshot.strategy_run_id = run_id
        print(f"[Ledger] Snapshot {snapshot.id} for run {run_id}: total ${snapshot.total_value_usd:,.2f} (pnl {snapshot.pnl_usd:+,.2f})")
        return snapshot.id

    def latest_snapshot(self) -> Optional[PortfolioSnapshot]:
        with self.session_factory() as session:
            row = session.scalar(self._latest_snapshot_stmt().options(selectinload(PortfolioSnapshotModel.positions)))
            return self._snapshot_from_row(row) if row else None

    def holdings_as_of(self, run_id: int) -> Optional[Holdings]:
        """Realized holdings recorded when run `run_id` settled."""
        stmt = (
            select(PortfolioSnapshotModel)
            .where(PortfolioSnapshotModel.strategy_run_id == run_id)
            .order_by(PortfolioSnapshotModel.timestamp.desc(), PortfolioSnapshotModel.id.desc())
            .options(selectinload(PortfolioSnapshotModel.positions))
            .limit(1)
        )
        with self.session_factory() as session:
            row = session.scalar(stmt)
            return self._snapshot_from_row(row).to_holdings() if row else None

    def latest_holdings(self) -> Optional[Holdings]:
        snapshot = self.latest_snapshot()
        return snapshot.to_holdings() if snapshot else None

    # ------------------------
    # Helpers
    # ------------------------

    @staticmethod
    def _latest_snapshot_stmt():
        return (
            select(PortfolioSnapshotModel)
            .order_by(PortfolioSnapshotModel.timestamp.desc(), PortfolioSnapshotModel.id.desc())
            .limit(1)
        )

    @staticmethod
    def _run_from_row(row: StrategyRunModel) -> StrategyRun:
        return StrategyRun(
            id=row.id,
            timestamp=row.timestamp,
            strategy_version=row.strategy_version,
            total_weight=row.total_weight,
            hedge_weight=row.hedge_weight,
            expected_return_bps=row.expected_return_bps,
            volatility_bps=row.volatility_bps,
            sharpe=row.sharpe,
        )

    @staticmethod
    def _trade_from_row(row: TradeModel) -> Trade:
        return Trade(
            id=row.id,
            timestamp=row.timestamp,
            mode=ExecutionMode(row.mode),
            action=TradeAction(row.action_type),
            account=row.account,
            strategy_run_id=row.strategy_run_id,
            market_id=row.market_id,
            ticker=row.ticker,
            size=row.size or 0.0,
            amount_in=row.amount_in or 0.0,
            amount_out=row.amount_out or 0.0,
            usd_value=row.usd_value or 0.0,
            fee_usd=row.fee_usd or 0.0,
            tx_hash=row.tx_hash,
            status=TradeStatus(row.status),
            attempts=row.attempts,
            detail=row.details,
        )

    @staticmethod
    def _snapshot_from_row(row: PortfolioSnapshotModel) -> PortfolioSnapshot:
        return PortfolioSnapshot(
            id=row.id,
            timestamp=row.timestamp,
            mode=ExecutionMode(row.mode),
            strategy_run_id=row.strategy_run_id,
            total_value_usd=row.total_value_usd,
            market_value_usd=row.market_value_usd,
            asset_value_usd=row.asset_value_usd,
            hedge_value_usd=row.hedge_value_usd,
            pnl_usd=row.pnl_usd,
            positions=[
                PositionSnapshot(
                    position_type=p.position_type,
                    market_id=p.market_id,
                    token_id=p.token_id,
                    symbol=p.symbol,
                    size=p.size,
                    usd_value=p.usd_value,
                )
                for p in row.positions
            ],
        )

    def _write(self, op: Callable[[Session], object]):
        with self._lock:
            try:
                with self.session_factory.begin() as session:
                    return op(session)
            except SQLAlchemyError as e:
                raise PersistenceFailure(f"ledger write failed: {e}") from e
