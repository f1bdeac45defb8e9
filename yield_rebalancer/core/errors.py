"""
Error taxonomy for the rebalance cycle.

Only DataUnavailable (wait for the next poll) and transient submission
errors are retried automatically. Everything else ends the cycle and
needs a manual review before the next one proceeds.
"""

from typing import Optional, Sequence


class RebalancerError(Exception):
    """Base class for all cycle errors."""

    retryable: bool = False


class DataUnavailable(RebalancerError):
    """A required observation does not exist yet."""

    retryable = True

    def __init__(self, message: str, missing: Optional[Sequence] = None):
        super().__init__(message)
        self.missing = list(missing or [])


class DataInconsistent(RebalancerError):
    """Alignment ordering or observation monotonicity was violated."""


class SolverNonConvergence(RebalancerError):
    """Optimizer did not reach a feasible, converged solution."""

    def __init__(self, message: str, iterations: int = 0):
        super().__init__(message)
        self.iterations = iterations


class ExecutionFailure(RebalancerError):
    """A single trade reached terminal failure."""

    def __init__(self, message: str, trade_id: Optional[int] = None):
        super().__init__(message)
        self.trade_id = trade_id


class PersistenceFailure(RebalancerError):
    """A ledger or store read or write failed."""


class CycleAborted(RebalancerError):
    """Cycle was cancelled before any trade was submitted."""
