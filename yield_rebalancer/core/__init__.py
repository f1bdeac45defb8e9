"""Core system components: config, errors, scheduler, cycle."""

from yield_rebalancer.core.config import Config
from yield_rebalancer.core.scheduler import Scheduler

__all__ = [
    "Config",
    "Scheduler",
]
