"""
Yield Rebalancer for GM pools with a Hyperliquid hedge

Periodic mean-variance rebalancing of deployed capital across liquidity
pool markets, hedged with a perpetual contract.

Components:
- Scheduler: Fires one cycle per interval boundary, never overlapping
- Observation Store: Append-only token prices, pool states, hedge states
- Snapshot Aligner: One coherent cross-market snapshot strictly after T
- Strategy Optimizer: Constrained mean-variance weights, hedge sizing, Sharpe
- Rebalance Planner: Withdrawals before deposits, dust filtering
- Execution Coordinator: Per-account submission, bounded retries, hedge last
- Run Ledger: Atomic runs/targets, trade transitions, holdings snapshots
- Monitoring: Cycle metrics and the review gate
"""

__version__ = "0.1.0"

from yield_rebalancer.core.config import Config
from yield_rebalancer.core.scheduler import Scheduler

__all__ = [
    "Config",
    "Scheduler",
]
