"""
Rebalance Planner

Turns a run's target weights and the current holdings into the ordered
pool trades for this cycle. The hedge is not planned here: it is sized
after the pool trades settle, from realized holdings.
"""

from typing import Iterable, List, Optional

from yield_rebalancer.core.config import Config
from yield_rebalancer.execution.orders import ExecutionMode, Holdings, Trade, TradeAction
from yield_rebalancer.strategy.types import StrategyTarget


class RebalancePlanner:
    """
    Ordering rules:
    1. Withdrawals (capital-freeing) before deposits (capital-deploying)
    2. Within each group, by market id
    3. |delta USD| below min_trade_usd is dust and skipped
    """

    def __init__(self, config: Config):
        self.config = config

    def plan(
        self,
        targets: Iterable[StrategyTarget],
        holdings: Holdings,
        strategy_run_id: Optional[int] = None,
    ) -> List[Trade]:
        exec_cfg = self.config.execution
        mode = ExecutionMode(exec_cfg.mode)
        total = holdings.total_value_usd
        if total <= 0:
            print("[Planner] No capital to allocate; empty plan")
            return []

        target_usd = {t.market_id: t.target_weight * total for t in targets}
        # Held markets the run no longer targets are fully withdrawn.
        for market_id in holdings.market_values:
            target_usd.setdefault(market_id, 0.0)

        withdrawals: List[Trade] = []
        deposits: List[Trade] = []
        skipped = 0
        for market_id in sorted(target_usd):
            current = holdings.market_values.get(market_id, 0.0)
            delta = target_usd[market_id] - current
            if abs(delta) < exec_cfg.min_trade_usd:
                if delta != 0.0:
                    skipped += 1
                continue
            trade = Trade(
                action=TradeAction.DEPOSIT if delta > 0 else TradeAction.WITHDRAWAL,
                account=exec_cfg.pool_account,
                market_id=market_id,
                usd_value=abs(delta),
                amount_in=abs(delta) if delta > 0 else 0.0,
                amount_out=abs(delta) if delta < 0 else 0.0,
                strategy_run_id=strategy_run_id,
                mode=mode,
            )
            (withdrawals if delta < 0 else deposits).append(trade)

        plan = withdrawals + deposits
        print(
            f"[Planner] {len(withdrawals)} withdrawals, {len(deposits)} deposits"
            f"{f', {skipped} dust deltas skipped' if skipped else ''}"
        )
        return plan
