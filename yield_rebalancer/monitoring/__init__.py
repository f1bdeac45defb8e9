"""Monitoring: cycle metrics and the review gate."""

from yield_rebalancer.monitoring.metrics import MetricsCollector
from yield_rebalancer.monitoring.kill_switch import KillSwitch

__all__ = ["MetricsCollector", "KillSwitch"]
