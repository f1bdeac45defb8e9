"""
Tests for rebalance planning: ordering and dust filtering.
"""

import pytest

from yield_rebalancer.execution.orders import Holdings, TradeAction, TradeStatus
from yield_rebalancer.execution.planner import RebalancePlanner
from yield_rebalancer.strategy.types import StrategyTarget


def target(market_id, weight):
    return StrategyTarget(market_id=market_id, target_weight=weight, expected_return_bps=0.0, variance_bps=0.0)


class TestRebalancePlanner:
    def test_withdrawals_precede_deposits(self, config):
        holdings = Holdings(cash_usd=10_000.0, market_values={1: 50_000.0, 2: 10_000.0, 3: 30_000.0})
        targets = [target(1, 0.2), target(2, 0.4), target(3, 0.3)]

        plan = RebalancePlanner(config).plan(targets, holdings, strategy_run_id=7)

        actions = [(t.action, t.market_id) for t in plan]
        assert actions == [
            (TradeAction.WITHDRAWAL, 1),
            (TradeAction.DEPOSIT, 2),
        ]
        assert plan[0].usd_value == pytest.approx(30_000.0)
        assert plan[1].usd_value == pytest.approx(30_000.0)
        assert all(t.strategy_run_id == 7 and t.status == TradeStatus.PLANNED for t in plan)

    def test_all_withdrawals_before_any_deposit(self, config):
        holdings = Holdings(cash_usd=0.0, market_values={1: 25_000.0, 2: 25_000.0, 3: 25_000.0, 4: 25_000.0})
        targets = [target(1, 0.45), target(2, 0.05), target(3, 0.45), target(4, 0.05)]

        plan = RebalancePlanner(config).plan(targets, holdings)

        kinds = [t.action for t in plan]
        assert kinds == [TradeAction.WITHDRAWAL, TradeAction.WITHDRAWAL, TradeAction.DEPOSIT, TradeAction.DEPOSIT]
        assert [t.market_id for t in plan] == [2, 4, 1, 3]

    def test_dust_deltas_are_skipped(self, config):
        config.execution.min_trade_usd = 10.0
        holdings = Holdings(cash_usd=1_000.0, market_values={1: 4_495.0, 2: 4_505.0})
        targets = [target(1, 0.45), target(2, 0.45)]

        assert RebalancePlanner(config).plan(targets, holdings) == []

    def test_untargeted_holding_is_withdrawn(self, config):
        holdings = Holdings(cash_usd=50_000.0, market_values={9: 50_000.0})

        plan = RebalancePlanner(config).plan([target(1, 0.9)], holdings)

        assert [(t.action, t.market_id) for t in plan] == [(TradeAction.WITHDRAWAL, 9), (TradeAction.DEPOSIT, 1)]
        assert plan[0].usd_value == pytest.approx(50_000.0)

    def test_cold_start_deploys_cash(self, config):
        plan = RebalancePlanner(config).plan([target(1, 0.5), target(2, 0.4)], Holdings(cash_usd=100_000.0))

        assert [t.action for t in plan] == [TradeAction.DEPOSIT, TradeAction.DEPOSIT]
        assert sum(t.usd_value for t in plan) == pytest.approx(90_000.0)
        assert all(t.account == config.execution.pool_account for t in plan)

    def test_no_capital_no_plan(self, config):
        assert RebalancePlanner(config).plan([target(1, 0.9)], Holdings()) == []
