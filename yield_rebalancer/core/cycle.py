"""
Rebalance Cycle

One cycle for reference instant T:
1. Read the baseline (previous run's weights, latest realized holdings)
2. Align one snapshot strictly after T
3. Optimize on a worker thread (bounded by solve_timeout_sec)
4. Record the run and its targets atomically
5. Plan, execute and snapshot

Retry policy:
- DataUnavailable: wait and retry, up to data_retry_attempts
- PersistenceFailure before any submission: retry from the last durable
  checkpoint (a recorded run is resumed, not recomputed)
- Everything else is terminal and trips the review gate
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from yield_rebalancer.core.config import Config
from yield_rebalancer.core.errors import (
    CycleAborted,
    DataUnavailable,
    PersistenceFailure,
    SolverNonConvergence,
)
from yield_rebalancer.core.scheduler import floor_to_interval
from yield_rebalancer.data.aligner import AlignedSnapshot, SnapshotAligner
from yield_rebalancer.data.entities import EntityRef, HedgeInstrument, MarketStateObservation
from yield_rebalancer.data.store import ObservationStore
from yield_rebalancer.execution.coordinator import CancellationToken, ExecutionCoordinator, ExecutionReport
from yield_rebalancer.execution.orders import Holdings
from yield_rebalancer.execution.planner import RebalancePlanner
from yield_rebalancer.ledger.run_ledger import RunLedger
from yield_rebalancer.monitoring.kill_switch import KillSwitch
from yield_rebalancer.monitoring.metrics import MetricsCollector
from yield_rebalancer.strategy.optimizer import StrategyOptimizer
from yield_rebalancer.strategy.types import MarketInput, OptimizationResult, OptimizerInput


class CycleStatus(str, Enum):
    COMPLETED = "completed"  # every trade confirmed
    PARTIAL = "partial"  # some trades terminally failed
    DUST = "dust"  # run committed, nothing to trade
    DATA_UNAVAILABLE = "data_unavailable"  # gave up waiting; next cycle may proceed
    ABORTED = "aborted"  # cancelled before any submission
    FAILED = "failed"  # terminal; review gate tripped
    BLOCKED = "blocked"  # review gate was already tripped


@dataclass
class CycleOutcome:
    reference_time: datetime
    status: CycleStatus
    run_id: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    report: Optional[ExecutionReport] = None
    attempts: int = 1

    @property
    def needs_review(self) -> bool:
        return self.status in (CycleStatus.FAILED, CycleStatus.BLOCKED)


class RebalanceCycle:
    """Wires aligner -> optimizer -> ledger -> planner -> coordinator."""

    def __init__(
        self,
        config: Config,
        store: ObservationStore,
        ledger: RunLedger,
        aligner: SnapshotAligner,
        optimizer: StrategyOptimizer,
        planner: RebalancePlanner,
        coordinator: ExecutionCoordinator,
        metrics: Optional[MetricsCollector] = None,
        kill_switch: Optional[KillSwitch] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.store = store
        self.ledger = ledger
        self.aligner = aligner
        self.optimizer = optimizer
        self.planner = planner
        self.coordinator = coordinator
        self.metrics = metrics or MetricsCollector(config)
        self.kill_switch = kill_switch or KillSwitch(config)
        self.sleep = sleep

    def run_once(
        self,
        reference_time: Optional[datetime] = None,
        token: Optional[CancellationToken] = None,
    ) -> CycleOutcome:
        """Run one cycle to a CycleOutcome. Never raises for cycle-level failures."""
        if reference_time is None:
            reference_time = floor_to_interval(datetime.now(timezone.utc), self.config.scheduler.interval_minutes)
        token = token or CancellationToken()

        if self.kill_switch.triggered:
            print(f"[Cycle] Review gate tripped ({self.kill_switch.reason}); skipping {reference_time.isoformat()}")
            outcome = CycleOutcome(reference_time, CycleStatus.BLOCKED, error=self.kill_switch.reason)
            self.metrics.record_outcome(outcome.status.value)
            return outcome

        self.metrics.start_cycle()
        cyc = self.config.cycle
        checkpoint: Dict = {}
        data_attempts = 0
        persistence_attempts = 0
        attempts = 0

        while True:
            attempts += 1
            try:
                outcome = self._run(reference_time, token, checkpoint)
                outcome.attempts = attempts
                break

            except DataUnavailable as e:
                data_attempts += 1
                if data_attempts <= cyc.data_retry_attempts:
                    print(f"[Cycle] {e}; retrying in {cyc.data_retry_wait_sec:.0f}s ({data_attempts}/{cyc.data_retry_attempts})")
                    self.metrics.record_data_retry()
                    self.sleep(cyc.data_retry_wait_sec)
                    continue
                outcome = self._outcome(reference_time, CycleStatus.DATA_UNAVAILABLE, e, checkpoint, attempts)
                break

            except PersistenceFailure as e:
                persistence_attempts += 1
                if not token.submitted and persistence_attempts <= cyc.persistence_retry_attempts:
                    print(f"[Cycle] {e}; restarting from last checkpoint ({persistence_attempts}/{cyc.persistence_retry_attempts})")
                    continue
                outcome = self._outcome(reference_time, CycleStatus.FAILED, e, checkpoint, attempts)
                break

            except CycleAborted as e:
                outcome = self._outcome(reference_time, CycleStatus.ABORTED, e, checkpoint, attempts)
                break

            except Exception as e:
                outcome = self._outcome(reference_time, CycleStatus.FAILED, e, checkpoint, attempts)
                break

        if outcome.status == CycleStatus.FAILED:
            self.kill_switch.trigger(f"{outcome.error_type}: {outcome.error}")
        elif self.kill_switch.check(self.metrics.snapshot()):
            self.kill_switch.trigger(self.kill_switch.reason)

        self.metrics.record_outcome(outcome.status.value, outcome.run_id)
        return outcome

    # ------------------------
    # Cycle body
    # ------------------------

    def _run(self, reference_time: datetime, token: CancellationToken, checkpoint: Dict) -> CycleOutcome:
        if "run_id" not in checkpoint:
            previous_weights = self._previous_weights()
            holdings = self.ledger.latest_holdings() or Holdings(cash_usd=self.config.execution.initial_capital_usd)

            markets, hedge_instrument = self._universe()
            required = self._required_entities(markets, hedge_instrument)
            snapshot = self.aligner.align(reference_time, required)
            inputs = self._optimizer_input(reference_time, snapshot, markets, hedge_instrument)

            token.raise_if_aborted()
            result = self._solve(inputs, previous_weights)
            self.metrics.record_solver(result.iterations)

            token.raise_if_aborted()
            run_id = self.ledger.record_run(result.run, result.targets)
            checkpoint.update(run_id=run_id, result=result, holdings=holdings)

        run_id = checkpoint["run_id"]
        result: OptimizationResult = checkpoint["result"]
        holdings: Holdings = checkpoint["holdings"]

        if result.is_dust:
            report = self.coordinator.execute(run_id, [], holdings, token=token)
            self.metrics.record_trades(0, 0, skipped=len(result.targets))
            print(f"[Cycle] Run {run_id} committed with no trades (dust)")
            return CycleOutcome(reference_time, CycleStatus.DUST, run_id=run_id, report=report)

        plan = self.planner.plan(result.targets, holdings, strategy_run_id=run_id)
        report = self.coordinator.execute(
            run_id, plan, holdings, hedge=result.hedge, exposures=result.exposures, token=token
        )
        self.metrics.record_trades(len(report.confirmed), len(report.failed))
        status = CycleStatus.PARTIAL if report.failed else CycleStatus.COMPLETED
        return CycleOutcome(reference_time, status, run_id=run_id, report=report)

    def _previous_weights(self) -> Dict[int, float]:
        previous = self.ledger.latest_run()
        if previous is None:
            print("[Cycle] No previous run; cold start")
            return {}
        return {t.market_id: t.target_weight for t in self.ledger.targets_for_run(previous.id)}

    def _universe(self):
        markets = self.store.list_markets()
        if not markets:
            raise DataUnavailable("no pool markets registered")
        ticker = self.config.hedge.ticker
        hedge_instrument = self.store.find_hedge_instrument(ticker)
        if hedge_instrument is None:
            raise DataUnavailable(f"hedge instrument {ticker} not registered")
        return markets, hedge_instrument

    @staticmethod
    def _required_entities(markets, hedge_instrument: HedgeInstrument) -> List[EntityRef]:
        required = {EntityRef.hedge(hedge_instrument.id)}
        for m in markets:
            required.add(EntityRef.market(m.id))
            required.add(EntityRef.token(m.index_token_id))
        return sorted(required)

    def _optimizer_input(
        self,
        reference_time: datetime,
        snapshot: AlignedSnapshot,
        markets,
        hedge_instrument: HedgeInstrument,
    ) -> OptimizerInput:
        start = reference_time - timedelta(hours=self.config.aligner.history_hours)
        market_inputs = []
        for m in markets:
            history: List[MarketStateObservation] = self.store.get_history(EntityRef.market(m.id), start, reference_time)
            history.append(snapshot.market_state(m.id))
            market_inputs.append(MarketInput(market=m, history=history, index_price=snapshot.token_price(m.index_token_id)))
        return OptimizerInput(
            reference_time=reference_time,
            markets=market_inputs,
            hedge_instrument=hedge_instrument,
            hedge_state=snapshot.hedge_state(hedge_instrument.id),
        )

    def _solve(self, inputs: OptimizerInput, previous_weights: Dict[int, float]) -> OptimizationResult:
        timeout = self.config.optimizer.solve_timeout_sec
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="solver")
        try:
            future = pool.submit(self.optimizer.optimize, inputs, previous_weights)
            try:
                return future.result(timeout=timeout)
            except FutureTimeout:
                raise SolverNonConvergence(f"solve exceeded {timeout:.0f}s")
        finally:
            pool.shutdown(wait=False)

    def _outcome(self, reference_time, status, error: Exception, checkpoint: Dict, attempts: int) -> CycleOutcome:
        print(f"[Cycle] {status.value.upper()} for {reference_time.isoformat()}: {type(error).__name__}: {error}")
        return CycleOutcome(
            reference_time,
            status,
            run_id=checkpoint.get("run_id"),
            error=str(error),
            error_type=type(error).__name__,
            attempts=attempts,
        )
