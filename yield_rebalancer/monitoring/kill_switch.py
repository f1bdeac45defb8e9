"""
Kill Switch

Review gate between cycles. Trips on:
- A terminal cycle outcome (inconsistent data, solver failure, exhausted retries)
- A failed-trade ratio above the configured ceiling

Once tripped, no further cycle runs until an operator calls reset().
"""

from yield_rebalancer.core.config import Config


class KillSwitch:
    """Circuit breaker for cycle failures."""

    def __init__(self, config: Config):
        self.config = config
        self.triggered = False
        self.reason = None

    def check(self, metrics: dict) -> bool:
        """
        Check whether the last cycle's metrics call for a review.

        Args:
            metrics: MetricsCollector.snapshot()

        Returns:
            True if the gate should trip
        """
        last = metrics.get("last_cycle", {}) or {}
        confirmed = last.get("trades_confirmed", 0)
        failed = last.get("trades_failed", 0)
        total = confirmed + failed
        if total and failed / total > self.config.monitoring.max_failed_trade_ratio:
            self.reason = f"Failed trade ratio too high: {failed}/{total}"
            return True
        return False

    def trigger(self, reason: str):
        """Trip the review gate; cycles stay blocked until reset()."""
        self.triggered = True
        self.reason = reason
        print(f"[KILL SWITCH] TRIGGERED: {reason}")

    def reset(self):
        """Reset kill switch (manual review done)."""
        if self.triggered:
            print(f"[KillSwitch] Reset after review (was: {self.reason})")
        self.triggered = False
        self.reason = None
