"""
End-to-end cycle tests against the in-memory ledger with paper/scripted venues.
"""

from datetime import timedelta

import pytest

from conftest import T0, FakeClock, ScriptedVenue, make_hedge_state, make_price, make_state, seed_cycle_data
from yield_rebalancer.core.cycle import CycleStatus, RebalanceCycle
from yield_rebalancer.core.errors import PersistenceFailure
from yield_rebalancer.data.aligner import SnapshotAligner
from yield_rebalancer.execution.coordinator import CancellationToken, ExecutionCoordinator
from yield_rebalancer.execution.orders import TradeAction, TradeStatus
from yield_rebalancer.execution.planner import RebalancePlanner
from yield_rebalancer.execution.venues import PaperVenue
from yield_rebalancer.monitoring.kill_switch import KillSwitch
from yield_rebalancer.monitoring.metrics import MetricsCollector
from yield_rebalancer.strategy.optimizer import StrategyOptimizer
from yield_rebalancer.strategy.types import StrategyRun, StrategyTarget


@pytest.fixture
def cycle_config(config):
    config.optimizer.concentration_cap = 0.7
    config.aligner.max_workers = 1
    config.cycle.data_retry_attempts = 2
    config.cycle.data_retry_wait_sec = 5.0
    return config


def build_cycle(config, store, ledger, pool_venue=None, hedge_venue=None, clock=None):
    clock = clock or FakeClock()
    venues = {
        config.execution.pool_account: pool_venue or PaperVenue(),
        config.execution.hedge_account: hedge_venue or PaperVenue(),
    }
    sleeps = []
    cycle = RebalanceCycle(
        config,
        store=store,
        ledger=ledger,
        aligner=SnapshotAligner(config, store, sleep=lambda s: None),
        optimizer=StrategyOptimizer(config),
        planner=RebalancePlanner(config),
        coordinator=ExecutionCoordinator(config, ledger, venues, sleep=clock.sleep, clock=clock.time),
        metrics=MetricsCollector(config),
        kill_switch=KillSwitch(config),
        sleep=sleeps.append,
    )
    cycle.sleeps = sleeps
    return cycle


def seed_after(store, universe, reference_time, after=timedelta(minutes=1)):
    """Only the observations just after T (history already present)."""
    for market in universe.markets:
        store.append(make_state(market.id, reference_time + after, i=5))
    store.append(make_price(universe.eth.id, reference_time + after, mid=2000.0))
    store.append(make_price(universe.btc.id, reference_time + after, mid=60000.0))
    store.append(make_hedge_state(universe.hedge.id, reference_time + after))


class TestHappyPath:
    def test_cold_start_cycle_completes(self, cycle_config, store, ledger, universe):
        seed_cycle_data(store, universe, T0)
        cycle = build_cycle(cycle_config, store, ledger)

        outcome = cycle.run_once(T0)

        assert outcome.status == CycleStatus.COMPLETED
        assert outcome.attempts == 1
        run = ledger.latest_run()
        assert run.id == outcome.run_id
        assert run.timestamp == T0
        assert run.total_weight == pytest.approx(0.9, abs=1e-6)
        targets = ledger.targets_for_run(run.id)
        assert {t.market_id for t in targets} == {universe.eth_market.id, universe.btc_market.id}
        assert all(0.0 <= t.target_weight <= 0.7 + 1e-9 for t in targets)

        trades = ledger.trades_for_run(run.id)
        assert all(t.status == TradeStatus.CONFIRMED and t.tx_hash for t in trades)
        assert [t.action for t in trades][-1] == TradeAction.HEDGE_ORDER

        holdings = ledger.latest_holdings()
        assert holdings.total_value_usd == pytest.approx(100_000.0)
        for t in targets:
            assert holdings.market_values[t.market_id] == pytest.approx(t.target_weight * 100_000.0)
        # short the realized directional exposure: 0.9 weight * 0.55 per unit
        assert holdings.hedge_size == pytest.approx(-0.495 * 100_000.0 / 2000.0, rel=1e-6)

    def test_next_cycle_starts_from_recorded_holdings(self, cycle_config, store, ledger, universe):
        seed_cycle_data(store, universe, T0)
        cycle = build_cycle(cycle_config, store, ledger)
        first = cycle.run_once(T0)

        seed_after(store, universe, T0 + timedelta(minutes=30))
        second = cycle.run_once(T0 + timedelta(minutes=30))

        assert second.status in (CycleStatus.COMPLETED, CycleStatus.DUST)
        assert second.run_id != first.run_id
        before = {t.market_id: t.target_weight for t in ledger.targets_for_run(first.run_id)}
        after = {t.market_id: t.target_weight for t in ledger.targets_for_run(second.run_id)}
        for market_id, weight in after.items():
            assert abs(weight - before[market_id]) <= cycle_config.optimizer.turnover_cap + 1e-6
        assert ledger.latest_holdings().total_value_usd == pytest.approx(100_000.0)

    def test_previous_run_bounds_turnover(self, cycle_config, store, ledger, universe):
        eth, btc = universe.eth_market.id, universe.btc_market.id
        prior = StrategyRun(timestamp=T0 - timedelta(minutes=30), strategy_version="mv-1", total_weight=0.9,
                            hedge_weight=0.0, expected_return_bps=0.0, volatility_bps=0.0, sharpe=None)
        ledger.record_run(prior, [
            StrategyTarget(market_id=eth, target_weight=0.0, expected_return_bps=0.0, variance_bps=0.0),
            StrategyTarget(market_id=btc, target_weight=0.9, expected_return_bps=0.0, variance_bps=0.0),
        ])
        seed_cycle_data(store, universe, T0)
        cycle = build_cycle(cycle_config, store, ledger)

        outcome = cycle.run_once(T0)

        # eth may rise at most 0.2 and btc must drop to the 0.7 cap
        weights = {t.market_id: t.target_weight for t in ledger.targets_for_run(outcome.run_id)}
        assert weights[eth] == pytest.approx(0.2, abs=1e-6)
        assert weights[btc] == pytest.approx(0.7, abs=1e-6)


class TestRetryableOutcomes:
    def test_missing_data_retries_then_gives_up(self, cycle_config, store, ledger, universe):
        cycle = build_cycle(cycle_config, store, ledger)

        outcome = cycle.run_once(T0)

        assert outcome.status == CycleStatus.DATA_UNAVAILABLE
        assert outcome.error_type == "DataUnavailable"
        assert outcome.attempts == 3
        assert cycle.sleeps == [5.0, 5.0]
        assert cycle.kill_switch.triggered is False
        assert ledger.latest_run() is None
        assert cycle.metrics.snapshot()["totals"]["data_retries"] == 2

    def test_late_data_lets_next_cycle_proceed(self, cycle_config, store, ledger, universe):
        cycle = build_cycle(cycle_config, store, ledger)
        assert cycle.run_once(T0).status == CycleStatus.DATA_UNAVAILABLE

        seed_cycle_data(store, universe, T0)

        assert cycle.run_once(T0).status == CycleStatus.COMPLETED

    def test_persistence_failure_before_submission_is_retried(self, cycle_config, store, ledger, universe, monkeypatch):
        seed_cycle_data(store, universe, T0)
        cycle = build_cycle(cycle_config, store, ledger)
        recorded = []
        real_record_run = ledger.record_run

        def flaky_record_run(run, targets):
            if not recorded:
                recorded.append(None)
                raise PersistenceFailure("database is locked")
            run_id = real_record_run(run, targets)
            recorded.append(run_id)
            return run_id

        monkeypatch.setattr(ledger, "record_run", flaky_record_run)

        outcome = cycle.run_once(T0)

        assert outcome.status == CycleStatus.COMPLETED
        assert outcome.attempts == 2
        assert recorded == [None, outcome.run_id]

    def test_retry_resumes_from_recorded_run(self, cycle_config, store, ledger, universe, monkeypatch):
        seed_cycle_data(store, universe, T0)
        cycle = build_cycle(cycle_config, store, ledger)
        run_ids = []
        failures = []
        real_record_run = ledger.record_run
        real_append = ledger.append_trade

        def counting_record_run(run, targets):
            run_ids.append(real_record_run(run, targets))
            return run_ids[-1]

        def flaky_append(trade):
            if not failures:
                failures.append(trade)
                raise PersistenceFailure("disk I/O error")
            return real_append(trade)

        monkeypatch.setattr(ledger, "record_run", counting_record_run)
        monkeypatch.setattr(ledger, "append_trade", flaky_append)

        outcome = cycle.run_once(T0)

        assert outcome.status == CycleStatus.COMPLETED
        assert len(run_ids) == 1
        assert outcome.run_id == run_ids[0]

    def test_persistence_failure_after_submission_is_terminal(self, cycle_config, store, ledger, universe, monkeypatch):
        seed_cycle_data(store, universe, T0)
        cycle = build_cycle(cycle_config, store, ledger)

        def broken_snapshot(run_id, snapshot):
            raise PersistenceFailure("disk full")

        monkeypatch.setattr(ledger, "record_snapshot", broken_snapshot)

        outcome = cycle.run_once(T0)

        assert outcome.status == CycleStatus.FAILED
        assert outcome.attempts == 1
        assert outcome.run_id is not None
        assert cycle.kill_switch.triggered


class TestTerminalOutcomes:
    def test_infeasible_caps_trip_the_review_gate(self, cycle_config, store, ledger, universe):
        cycle_config.optimizer.concentration_cap = 0.25  # two markets cannot reach 0.9
        seed_cycle_data(store, universe, T0)
        cycle = build_cycle(cycle_config, store, ledger)

        outcome = cycle.run_once(T0)

        assert outcome.status == CycleStatus.FAILED
        assert outcome.error_type == "SolverNonConvergence"
        assert outcome.needs_review
        assert ledger.latest_run() is None
        assert cycle.kill_switch.triggered

        blocked = cycle.run_once(T0)
        assert blocked.status == CycleStatus.BLOCKED

        cycle_config.optimizer.concentration_cap = 0.7
        cycle.kill_switch.reset()
        assert cycle.run_once(T0).status == CycleStatus.COMPLETED

    def test_mostly_failed_trades_trip_the_review_gate(self, cycle_config, store, ledger, universe):
        seed_cycle_data(store, universe, T0)
        clock = FakeClock()
        rejecting = ScriptedVenue(clock, script={m.id: ["rejected"] for m in universe.markets})
        cycle = build_cycle(cycle_config, store, ledger, pool_venue=rejecting, clock=clock)

        outcome = cycle.run_once(T0)

        assert outcome.status == CycleStatus.PARTIAL
        assert len(outcome.report.failed) == 2
        assert cycle.kill_switch.triggered
        assert ledger.latest_holdings().cash_usd == pytest.approx(100_000.0)
        assert cycle.run_once(T0 + timedelta(minutes=30)).status == CycleStatus.BLOCKED

    def test_abort_before_submission(self, cycle_config, store, ledger, universe):
        seed_cycle_data(store, universe, T0)
        cycle = build_cycle(cycle_config, store, ledger)
        token = CancellationToken()
        token.abort()

        outcome = cycle.run_once(T0, token=token)

        assert outcome.status == CycleStatus.ABORTED
        assert ledger.latest_run() is None
        assert not cycle.kill_switch.triggered

    def test_unregistered_hedge_instrument_is_data_unavailable(self, cycle_config, store, ledger, universe):
        cycle_config.hedge.ticker = "SOL"
        cycle_config.cycle.data_retry_attempts = 0
        seed_cycle_data(store, universe, T0)
        cycle = build_cycle(cycle_config, store, ledger)

        assert cycle.run_once(T0).status == CycleStatus.DATA_UNAVAILABLE
