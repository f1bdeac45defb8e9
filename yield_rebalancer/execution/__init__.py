"""Execution: trade planning, venues, and the per-account coordinator."""

from yield_rebalancer.execution.orders import Trade, TradeAction, TradeStatus, Holdings
from yield_rebalancer.execution.planner import RebalancePlanner

__all__ = ["Trade", "TradeAction", "TradeStatus", "Holdings", "RebalancePlanner"]
