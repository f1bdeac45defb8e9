"""
Execution Coordinator

Realizes a committed run's plan as trades:
1. Record every planned trade
2. Submit per account slot (serialized within an account, accounts in parallel)
3. Poll each submission to a terminal status, resubmitting with backoff
   (an expired order is canceled and re-read first; partial hedge fills count)
4. Size and execute the hedge last, from realized holdings
5. Record the realized portfolio snapshot
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from yield_rebalancer.core.config import Config
from yield_rebalancer.core.errors import CycleAborted, ExecutionFailure, PersistenceFailure
from yield_rebalancer.execution.orders import (
    Confirmed,
    ExecutionMode,
    Failed,
    Holdings,
    PendingHandle,
    PortfolioSnapshot,
    Trade,
    TradeAction,
    TradeStatus,
)
from yield_rebalancer.execution.venues import ExecutionVenue
from yield_rebalancer.ledger.run_ledger import RunLedger
from yield_rebalancer.strategy.optimizer import hedge_weight_for
from yield_rebalancer.strategy.types import HedgeInstruction
from yield_rebalancer.utils.retry import RetryPolicy

# Transport-level submit errors count as a failed attempt, like a venue rejection.
SUBMIT_ERRORS = (ExecutionFailure, ConnectionError, TimeoutError, OSError)


class CancellationToken:
    """
    Abort switch for one cycle.

    Honoured only until the first trade is submitted; after that every trade
    must run to a terminal status and abort requests are ignored.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._aborted = False
        self._committed = False
        self._submitted = False

    def abort(self) -> bool:
        """Request abort. Returns False if execution already started."""
        with self._lock:
            if self._committed:
                print("[Coordinator] Abort ignored: trades already submitted")
                return False
            self._aborted = True
            return True

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def submitted(self) -> bool:
        """True once any trade may have reached a venue."""
        return self._submitted

    def mark_submitted(self) -> None:
        self._submitted = True

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise CycleAborted("cycle aborted before any trade was submitted")

    def commit(self) -> None:
        """Point of no return: the first submission is about to happen."""
        with self._lock:
            if self._aborted:
                raise CycleAborted("cycle aborted before any trade was submitted")
            self._committed = True


@dataclass
class ExecutionReport:
    """Outcome of one run's execution."""

    strategy_run_id: Optional[int]
    trades: List[Trade] = field(default_factory=list)
    holdings: Optional[Holdings] = None
    snapshot_id: Optional[int] = None

    @property
    def confirmed(self) -> List[Trade]:
        return [t for t in self.trades if t.status == TradeStatus.CONFIRMED]

    @property
    def failed(self) -> List[Trade]:
        return [t for t in self.trades if t.status == TradeStatus.FAILED]

    @property
    def partial(self) -> bool:
        return bool(self.failed) and bool(self.confirmed)


class ExecutionCoordinator:
    """
    Fault-tolerant multi-step execution.

    A terminal failure of one trade never rolls back confirmed siblings;
    the partial outcome is recorded as-is.
    """

    def __init__(
        self,
        config: Config,
        ledger: RunLedger,
        venues: Mapping[str, ExecutionVenue],
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.ledger = ledger
        self.venues = dict(venues)
        self.sleep = sleep
        self.clock = clock
        self.retry_policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay_sec=config.retry.base_delay_sec,
            factor=config.retry.factor,
            max_delay_sec=config.retry.max_delay_sec,
            jitter=config.retry.jitter,
        )
        self._holdings_lock = threading.Lock()
        self._token = CancellationToken()
        # trade id -> status writes the ledger refused, replayed in order after execution
        self._deferred: Dict[int, List[Tuple[TradeStatus, dict]]] = {}
        self._deferred_lock = threading.Lock()

    def execute(
        self,
        strategy_run_id: Optional[int],
        plan: List[Trade],
        holdings: Holdings,
        hedge: Optional[HedgeInstruction] = None,
        exposures: Optional[Dict[int, float]] = None,
        token: Optional[CancellationToken] = None,
    ) -> ExecutionReport:
        """
        Execute `plan` against `holdings` (not mutated) and record the result.

        Args:
            hedge: Hedge instruction from the run; None skips the hedge step
            exposures: market_id -> directional exposure per unit weight, used
                to size the hedge from realized weights
            token: Cancellation token; aborting before the first submission
                raises CycleAborted

        Raises:
            CycleAborted: aborted before any submission
            PersistenceFailure: a ledger write failed (token.submitted tells
                whether anything reached a venue). Status writes that fail
                once trades are in flight are queued and replayed after every
                trade has finished; if they still fail this is raised after
                the snapshot is recorded.
        """
        token = token or CancellationToken()
        token.raise_if_aborted()

        mode = ExecutionMode(self.config.execution.mode)
        realized = holdings.copy()
        report = ExecutionReport(strategy_run_id=strategy_run_id)

        self._token = token
        self._deferred = {}
        if plan:
            token.commit()
            for trade in plan:
                trade.strategy_run_id = strategy_run_id
                trade.mode = mode
                self.ledger.append_trade(trade)
            report.trades.extend(plan)
            self._run_accounts(plan, realized)

        if hedge is not None:
            hedge_trade = self._plan_hedge(strategy_run_id, hedge, exposures or {}, realized, mode)
            if hedge_trade is not None:
                token.commit()
                self.ledger.append_trade(hedge_trade)
                report.trades.append(hedge_trade)
                self._run_trade(hedge_trade, realized)
            realized.hedge_price = hedge.oracle_price
            realized.hedge_ticker = hedge.ticker

        unwritten = self._flush_deferred()
        snapshot = PortfolioSnapshot.from_holdings(realized, datetime.now(timezone.utc), mode)
        report.snapshot_id = self.ledger.record_snapshot(strategy_run_id, snapshot)
        report.holdings = realized
        if unwritten:
            raise PersistenceFailure(
                f"run {strategy_run_id}: {len(unwritten)} trade status writes failed after execution: {unwritten[0]}"
            )

        print(
            f"[Coordinator] Run {strategy_run_id}: {len(report.confirmed)} confirmed, "
            f"{len(report.failed)} failed of {len(report.trades)} trades"
        )
        return report

    # ------------------------
    # Account slots
    # ------------------------

    def _run_accounts(self, plan: List[Trade], realized: Holdings) -> None:
        """One worker per account; plan order is preserved within an account."""
        by_account: Dict[str, List[Trade]] = {}
        for trade in plan:
            by_account.setdefault(trade.account, []).append(trade)

        workers = max(1, min(self.config.execution.max_parallel_accounts, len(by_account)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="account") as pool:
            futures = [pool.submit(self._run_sequence, trades, realized) for trades in by_account.values()]
        # Every account has run to completion; surface the first error, if any.
        for f in futures:
            f.result()

    def _run_sequence(self, trades: List[Trade], realized: Holdings) -> None:
        for trade in trades:
            self._run_trade(trade, realized)

    # ------------------------
    # Single trade state machine
    # ------------------------

    def _run_trade(self, trade: Trade, realized: Holdings) -> None:
        """Drive one trade to confirmed or failed."""
        venue = self.venues.get(trade.account)
        if venue is None:
            self._finish_failed(trade, f"no venue for account '{trade.account}'")
            return

        state = self.retry_policy.start()
        while not state.terminal:
            trade.attempts = state.begin_attempt()
            outcome = self._attempt(venue, trade)
            if isinstance(outcome, Confirmed):
                state.record_success()
                self._finish_confirmed(trade, outcome, realized)
                return
            if trade.is_hedge and outcome.filled_size:
                self._apply_partial_fill(trade, outcome, realized)
                if abs(trade.remaining_size) < self.config.execution.min_hedge_size:
                    state.record_success()
                    tx_hash = outcome.tx_hash or f"fill-{trade.id}-{trade.attempts}"
                    self._finish_confirmed(trade, Confirmed(tx_hash=tx_hash, filled_size=0.0), realized)
                    return
            delay = state.record_failure(outcome.reason)
            print(f"[Coordinator] {trade.describe()} attempt {trade.attempts} failed: {outcome.reason}")
            if delay is not None:
                self.sleep(delay)

        reason = f"failed after {state.attempts} attempts: {state.last_error}"
        if trade.filled_size:
            reason += f" (filled {trade.filled_size:g} of {trade.size:g})"
        self._finish_failed(trade, reason)

    def _attempt(self, venue: ExecutionVenue, trade: Trade) -> Union[Confirmed, Failed]:
        """Submit once and poll to a result. Returns Confirmed or Failed."""
        self._token.mark_submitted()
        try:
            handle = venue.submit(trade)
        except SUBMIT_ERRORS as e:
            return Failed(reason=f"submit error: {e}")

        trade.status = TradeStatus.SUBMITTED
        self._record_status(trade, TradeStatus.SUBMITTED, attempts=trade.attempts, detail=f"ref={handle.reference}")
        return self._await(venue, handle)

    def _await(self, venue: ExecutionVenue, handle: PendingHandle) -> Union[Confirmed, Failed]:
        timeout = self.config.execution.confirm_timeout_sec
        while True:
            result = self._poll_once(venue, handle)
            if isinstance(result, (Confirmed, Failed)):
                return result
            if self.clock() - handle.submitted_at >= timeout:
                return self._settle_expired(venue, handle, timeout)
            self.sleep(self.config.execution.poll_interval_sec)

    def _poll_once(self, venue: ExecutionVenue, handle: PendingHandle):
        try:
            return venue.poll(handle)
        except (ConnectionError, TimeoutError, OSError) as e:
            print(f"[Coordinator] Poll {handle.reference} error: {e}")
            return None

    def _settle_expired(self, venue: ExecutionVenue, handle: PendingHandle, timeout: float) -> Union[Confirmed, Failed]:
        """
        Cancel an order that outlived the confirmation timeout and read it
        once more. A late fill is kept; only an order still not filled counts
        as a failed attempt and may be resubmitted.
        """
        try:
            venue.cancel(handle)
        except SUBMIT_ERRORS as e:
            print(f"[Coordinator] Cancel {handle.reference} error: {e}")

        result = self._poll_once(venue, handle)
        if isinstance(result, Confirmed):
            print(f"[Coordinator] {handle.reference} confirmed after {timeout:.0f}s timeout")
            return result
        if isinstance(result, Failed) and result.filled_size:
            return result
        return Failed(reason=f"not confirmed within {timeout:.0f}s")

    def _apply_partial_fill(self, trade: Trade, outcome: Failed, realized: Holdings) -> None:
        with self._holdings_lock:
            realized.apply(trade, outcome)
        trade.filled_size += outcome.filled_size
        trade.detail = f"filled {trade.filled_size:g} of {trade.size:g}"
        self._record_status(trade, TradeStatus.SUBMITTED, attempts=trade.attempts, detail=trade.detail)
        print(f"[Coordinator] Partial fill {outcome.filled_size:+g} {trade.ticker}; {trade.remaining_size:+g} remaining")

    def _finish_confirmed(self, trade: Trade, result: Confirmed, realized: Holdings) -> None:
        trade.status = TradeStatus.CONFIRMED
        trade.tx_hash = result.tx_hash
        trade.fee_usd = result.fee_usd
        filled = trade.remaining_size if result.filled_size is None else result.filled_size
        # Holdings first: a confirmed trade counts even if the ledger write is deferred.
        with self._holdings_lock:
            realized.apply(trade, result)
        detail = None
        if trade.is_hedge:
            trade.filled_size += filled
            if trade.filled_size != trade.size:
                detail = trade.detail = f"filled {trade.filled_size:g} of {trade.size:g}"
        self._record_status(
            trade,
            TradeStatus.CONFIRMED,
            tx_hash=result.tx_hash,
            attempts=trade.attempts,
            fee_usd=result.fee_usd,
            detail=detail,
        )
        print(f"[Coordinator] Confirmed {trade.describe()} ({result.tx_hash})")

    def _finish_failed(self, trade: Trade, reason: str) -> None:
        trade.status = TradeStatus.FAILED
        trade.detail = reason
        self._record_status(trade, TradeStatus.FAILED, detail=reason, attempts=trade.attempts)
        print(f"[Coordinator] FAILED {trade.describe()}: {reason}")

    # ------------------------
    # Ledger writes
    # ------------------------

    def _record_status(self, trade: Trade, status: TradeStatus, **fields) -> None:
        """
        Write a status transition, or queue it if the ledger is failing.

        Once a trade has a queued write, later writes for it queue behind it
        so transitions replay in order.
        """
        with self._deferred_lock:
            queued = self._deferred.get(trade.id)
            if queued is not None:
                queued.append((status, fields))
                return
        try:
            self.ledger.update_trade_status(trade.id, status, **fields)
        except PersistenceFailure as e:
            print(f"[Coordinator] Ledger write trade {trade.id} -> {status.value} failed, deferred: {e}")
            with self._deferred_lock:
                self._deferred.setdefault(trade.id, []).append((status, fields))

    def _flush_deferred(self) -> List[str]:
        """Replay queued status writes once. Returns the writes that still failed."""
        unwritten: List[str] = []
        with self._deferred_lock:
            for trade_id in list(self._deferred):
                writes = self._deferred[trade_id]
                while writes:
                    status, fields = writes[0]
                    try:
                        self.ledger.update_trade_status(trade_id, status, **fields)
                    except PersistenceFailure as e:
                        unwritten.append(f"trade {trade_id} -> {status.value}: {e}")
                        break
                    writes.pop(0)
                if not writes:
                    del self._deferred[trade_id]
        return unwritten

    # ------------------------
    # Hedge
    # ------------------------

    def _plan_hedge(
        self,
        strategy_run_id: Optional[int],
        hedge: HedgeInstruction,
        exposures: Dict[int, float],
        realized: Holdings,
        mode: ExecutionMode,
    ) -> Optional[Trade]:
        """Hedge the exposure that was actually realized, not the target."""
        if hedge.oracle_price <= 0:
            return None

        weights = realized.weights()
        if exposures:
            net_exposure = sum(weights.get(mid, 0.0) * e for mid, e in exposures.items())
            hedge_weight, _ = hedge_weight_for(net_exposure, hedge.max_weight)
        else:
            hedge_weight = hedge.hedge_weight

        target_size = hedge_weight * realized.total_value_usd / hedge.oracle_price
        delta = target_size - realized.hedge_size
        if abs(delta) < self.config.execution.min_hedge_size:
            print(f"[Coordinator] Hedge delta {delta:+.4f} {hedge.ticker} below minimum; no hedge order")
            return None

        return Trade(
            action=TradeAction.HEDGE_ORDER,
            account=self.config.execution.hedge_account,
            ticker=hedge.ticker,
            size=delta,
            usd_value=abs(delta) * hedge.oracle_price,
            strategy_run_id=strategy_run_id,
            mode=mode,
        )
