"""
Main entry point for the yield rebalancer.

Orchestrates all components: Scheduler → Hedge poller → Aligner → Optimizer → Ledger → Execution.
"""

import sys
import argparse
from datetime import datetime
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from eth_account import Account
from hyperliquid.info import Info
from hyperliquid.exchange import Exchange

from yield_rebalancer.core.config import Config
from yield_rebalancer.core.cycle import CycleOutcome, RebalanceCycle
from yield_rebalancer.core.errors import RebalancerError
from yield_rebalancer.core.scheduler import Scheduler
from yield_rebalancer.data.aligner import SnapshotAligner
from yield_rebalancer.data.store import ObservationStore
from yield_rebalancer.execution.coordinator import ExecutionCoordinator
from yield_rebalancer.execution.planner import RebalancePlanner
from yield_rebalancer.execution.venues import ExecutionVenue, HyperliquidHedgeVenue, PaperVenue
from yield_rebalancer.ingestion.hyperliquid import HedgeStatePoller
from yield_rebalancer.ledger.run_ledger import RunLedger
from yield_rebalancer.ledger.schema import init_schema, make_engine, make_session_factory
from yield_rebalancer.monitoring.kill_switch import KillSwitch
from yield_rebalancer.monitoring.metrics import MetricsCollector
from yield_rebalancer.strategy.optimizer import StrategyOptimizer


class RebalanceSystem:
    """
    Main orchestrator for the yield rebalancer.

    Builds every component from the config and hands the scheduler a
    callback that runs one cycle per interval boundary.
    """

    def __init__(self, config: Config, pool_venue: Optional[ExecutionVenue] = None, poll_hedge: bool = True):
        """
        Initialize the system.

        Args:
            config: System configuration
            pool_venue: Venue for pool deposits/withdrawals; required in live mode
            poll_hedge: Append a fresh hedge instrument state before each cycle
        """
        self.config = config

        # Validate config
        errors = config.validate()
        if errors:
            print("[ERROR] Configuration validation failed:")
            for err in errors:
                print(f"  - {err}")
            sys.exit(1)

        live = config.execution.mode == "live"
        if live and pool_venue is None:
            print("[ERROR] Live mode needs a pool venue for deposits/withdrawals")
            sys.exit(1)

        print(f"[Init] Starting {config.execution.mode} rebalancer (hedge on {config.hedge.network})")

        # Ledger / store share one database
        self.engine = make_engine(config.ledger.database_url, echo=config.ledger.echo)
        init_schema(self.engine)
        session_factory = make_session_factory(self.engine)
        self.store = ObservationStore(session_factory)
        self.ledger = RunLedger(session_factory)

        # Hyperliquid clients
        self.info = Info(config.hedge.api_url, skip_ws=True)
        if live:
            # Create LocalAccount from private key for Exchange
            wallet = Account.from_key(config.hedge.secret_key)
            self.exchange = Exchange(wallet, config.hedge.api_url, account_address=config.hedge.address or None)
            hedge_venue = HyperliquidHedgeVenue(config, self.exchange, self.info)
        else:
            self.exchange = None
            hedge_venue = PaperVenue()

        venues = {
            config.execution.pool_account: pool_venue or PaperVenue(),
            config.execution.hedge_account: hedge_venue,
        }

        # Components
        self.hedge_poller = HedgeStatePoller(config, self.store, self.info) if poll_hedge else None
        self.metrics = MetricsCollector(config)
        self.kill_switch = KillSwitch(config)
        self.cycle = RebalanceCycle(
            config,
            store=self.store,
            ledger=self.ledger,
            aligner=SnapshotAligner(config, self.store),
            optimizer=StrategyOptimizer(config),
            planner=RebalancePlanner(config),
            coordinator=ExecutionCoordinator(config, self.ledger, venues),
            metrics=self.metrics,
            kill_switch=self.kill_switch,
        )

        # Initialize scheduler (pass rebalance callback)
        self.scheduler = Scheduler(config, self.rebalance)

        print("[Init] All components initialized")

    def rebalance(self, reference_time: Optional[datetime] = None) -> CycleOutcome:
        """Execute one rebalance cycle for `reference_time` (default: latest boundary)."""
        print("\n" + "=" * 60)
        print("[Rebalance] Starting rebalance cycle")
        print("=" * 60)

        if self.hedge_poller is not None and not self.kill_switch.triggered:
            try:
                self.hedge_poller.poll()
            except (RebalancerError, ConnectionError, TimeoutError, OSError) as e:
                # The aligner reports the gap if no fresh state lands in time.
                print(f"[Rebalance] Hedge state poll failed: {e}")

        outcome = self.cycle.run_once(reference_time)
        print(f"[Rebalance] Cycle {outcome.status.value} (run={outcome.run_id})\n")
        return outcome

    def run(self):
        """Run the rebalancer (blocks indefinitely)."""
        print("[Main] Starting scheduler...")
        try:
            self.scheduler.run_forever()
        except KeyboardInterrupt:
            print("\n[Main] Shutdown signal received")
            self.scheduler.stop()
            print("[Main] Goodbye!")


def main(argv=None):
    """CLI entry point."""
    print("=" * 60)
    print("  YIELD REBALANCER")
    print("=" * 60)

    # CLI args
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", type=str, default="", help="Path to YAML config file")
    parser.add_argument("--once", action="store_true", help="Run a single cycle for the latest boundary and exit")
    parser.add_argument("--paper", action="store_true", help="Force paper execution mode")
    parser.add_argument("--init-db", action="store_true", help="Create the ledger schema and exit")
    args = parser.parse_args(argv)

    # Load .env if present (before Config) to populate env overrides
    load_dotenv(dotenv_path=Path.cwd() / ".env")

    # Load config (defaults + env overrides or YAML)
    if args.config:
        config = Config.from_yaml(args.config)
    else:
        config = Config()
    if args.paper:
        config.execution.mode = "paper"

    if args.init_db:
        init_schema(make_engine(config.ledger.database_url))
        print(f"[Main] Schema ready at {config.ledger.database_url}")
        return 0

    system = RebalanceSystem(config)
    if args.once:
        outcome = system.rebalance()
        return 1 if outcome.needs_review else 0

    system.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
