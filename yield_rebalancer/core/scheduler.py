"""
Scheduler: Triggers rebalance cycles on a fixed cadence.

Cycles fire at every `interval_minutes` boundary (UTC), shifted by
`offset_seconds` so ingestion has landed observations just after the
boundary. The callback runs synchronously, so cycles never overlap: a
cycle that overruns the next boundary simply delays it.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from yield_rebalancer.core.config import Config


def floor_to_interval(ts: datetime, interval_minutes: int) -> datetime:
    """Latest interval boundary at or before `ts` (UTC)."""
    ts = ts.astimezone(timezone.utc)
    day_start = ts.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = int((ts - day_start).total_seconds())
    step = interval_minutes * 60
    return day_start + timedelta(seconds=(elapsed // step) * step)


class Scheduler:
    """
    Rebalance scheduler with boundary-aligned timing.

    The callback receives the boundary instant, which is the reference
    time the cycle aligns its snapshot to.
    """

    def __init__(
        self,
        config: Config,
        rebalance_callback: Callable[[datetime], None],
        now: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize scheduler.

        Args:
            config: System configuration
            rebalance_callback: Function to call on each trigger with the boundary
        """
        self.config = config
        self.rebalance_callback = rebalance_callback
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep
        self.running = False
        self.last_boundary: Optional[datetime] = None

    def next_rebalance_time(self) -> datetime:
        """
        Calculate next fire time (boundary + offset) not yet handled.

        Returns:
            Next rebalance datetime (UTC)
        """
        cfg = self.config.scheduler
        now = self.now()
        boundary = floor_to_interval(now, cfg.interval_minutes)
        fire = boundary + timedelta(seconds=cfg.offset_seconds)
        if self.last_boundary is not None and boundary <= self.last_boundary:
            boundary = self.last_boundary + timedelta(minutes=cfg.interval_minutes)
            fire = boundary + timedelta(seconds=cfg.offset_seconds)
        elif now > fire and self.last_boundary is None:
            # Started mid-interval: wait for the next boundary
            boundary += timedelta(minutes=cfg.interval_minutes)
            fire = boundary + timedelta(seconds=cfg.offset_seconds)
        return fire

    def seconds_until_next_rebalance(self) -> float:
        """Calculate seconds until next rebalance."""
        delta = (self.next_rebalance_time() - self.now()).total_seconds()
        return max(0.0, delta)

    def tick(self) -> bool:
        """
        Fire the callback if a boundary is due.

        Returns:
            True if a cycle ran
        """
        if self.seconds_until_next_rebalance() > 0:
            return False
        fire = self.next_rebalance_time()
        boundary = fire - timedelta(seconds=self.config.scheduler.offset_seconds)
        self.last_boundary = boundary
        print(f"[Scheduler] Triggering rebalance for {boundary.isoformat()}")
        self.rebalance_callback(boundary)
        return True

    def run_forever(self):
        """
        Run scheduler loop indefinitely.

        Blocks until stopped. Calls rebalance_callback at each trigger.
        """
        self.running = True
        print(f"[Scheduler] Started. Interval={self.config.scheduler.interval_minutes}m")

        while self.running:
            try:
                sleep_sec = self.seconds_until_next_rebalance()
                if sleep_sec > 0:
                    next_time = self.next_rebalance_time()
                    print(f"[Scheduler] Next rebalance in {sleep_sec:.0f}s at {next_time.isoformat()}")
                    self.sleep(min(sleep_sec, 60))  # Wake up every minute to check
                    continue

                try:
                    self.tick()
                except Exception as e:
                    print(f"[Scheduler] ERROR during rebalance: {e}")
                    # Continue running despite errors

            except KeyboardInterrupt:
                print("[Scheduler] Interrupted by user")
                self.running = False
                break

    def stop(self):
        """Stop the scheduler loop."""
        print("[Scheduler] Stopping...")
        self.running = False
