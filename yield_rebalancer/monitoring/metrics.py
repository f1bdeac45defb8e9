"""
Metrics Collector

Per-cycle counters: trades confirmed / failed / skipped, solver iterations,
cycle outcomes, data retries.
"""

from typing import Optional

from yield_rebalancer.core.config import Config


class MetricsCollector:
    """
    Collects and logs cycle metrics.

    Counters accumulate over the process lifetime; `last_cycle` holds the
    most recent cycle's values for the review gate.
    """

    def __init__(self, config: Config):
        self.config = config
        self.metrics = {}
        self.last_cycle = {}

    def _incr(self, key: str, value: float = 1):
        self.metrics[key] = self.metrics.get(key, 0) + value

    def record_solver(self, iterations: int):
        self.last_cycle["solver_iterations"] = iterations
        arr = self.metrics.get("solver_iterations", [])
        arr.append(iterations)
        self.metrics["solver_iterations"] = arr

    def record_trades(self, confirmed: int, failed: int, skipped: int = 0):
        self.last_cycle.update({"trades_confirmed": confirmed, "trades_failed": failed, "trades_skipped": skipped})
        self._incr("trades_confirmed", confirmed)
        self._incr("trades_failed", failed)
        self._incr("trades_skipped", skipped)

    def record_data_retry(self):
        self._incr("data_retries")

    def record_outcome(self, status: str, run_id: Optional[int] = None):
        self.last_cycle["outcome"] = status
        self.last_cycle["run_id"] = run_id
        self._incr(f"cycles_{status}")
        if self.config.monitoring.metrics_enabled:
            print(f"[Metrics] cycle={status} run={run_id} {self._format_last()}")

    def start_cycle(self):
        self.last_cycle = {}

    def snapshot(self) -> dict:
        return {"totals": dict(self.metrics), "last_cycle": dict(self.last_cycle)}

    def _format_last(self) -> str:
        keys = ("trades_confirmed", "trades_failed", "trades_skipped", "solver_iterations")
        return " ".join(f"{k}={self.last_cycle[k]}" for k in keys if k in self.last_cycle)
