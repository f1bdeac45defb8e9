"""
Hedge State Poller

Reads the hedge perp's context from the Hyperliquid Info endpoint
(metaAndAssetCtxs) and appends a HedgeInstrumentState to the observation
store. Token price and pool state polling are owned by other collaborators.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from hyperliquid.info import Info

from yield_rebalancer.core.config import Config
from yield_rebalancer.core.errors import DataUnavailable
from yield_rebalancer.data.entities import HedgeInstrumentState
from yield_rebalancer.data.store import ObservationStore
from yield_rebalancer.utils.retry import RetryPolicy, call_with_retries


class HedgeStatePoller:
    """
    One observation per poll for the configured hedge ticker.

    Margin fractions derive from the asset's max leverage: initial margin is
    1 / maxLeverage and maintenance margin is half of that.
    """

    def __init__(
        self,
        config: Config,
        store: ObservationStore,
        info: Optional[Info] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize poller.

        Args:
            config: System configuration
            store: Observation store to append into
            info: Hyperliquid Info client (created from config when omitted)
        """
        self.config = config
        self.store = store
        self.info = info or Info(config.hedge.api_url, skip_ws=True)
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.retry_policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay_sec=config.retry.base_delay_sec,
            factor=config.retry.factor,
            max_delay_sec=config.retry.max_delay_sec,
            jitter=config.retry.jitter,
        )

    def get_meta_and_asset_ctxs(self) -> Tuple[Dict, List[Dict]]:
        """
        Fetch universe metadata and asset contexts using SDK.

        Returns:
            Tuple of (meta, asset_contexts)
        """
        resp = call_with_retries(
            self.info.meta_and_asset_ctxs,
            policy=self.retry_policy,
            retry_on=(ConnectionError, TimeoutError, OSError),
        )
        # Official shape: [meta, assetCtxs]
        if isinstance(resp, list) and len(resp) >= 2:
            meta = resp[0] or {}
            asset_ctxs = resp[1] or []
        elif isinstance(resp, dict):
            meta = resp.get("meta") or {}
            asset_ctxs = resp.get("assetCtxs") or []
        else:
            raise DataUnavailable("unexpected response for metaAndAssetCtxs")
        return meta, asset_ctxs

    def poll(self) -> HedgeInstrumentState:
        """Fetch the hedge ticker's context and append it; returns the stored observation."""
        ticker = self.config.hedge.ticker
        instrument = self.store.register_hedge_instrument(ticker)
        meta, asset_ctxs = self.get_meta_and_asset_ctxs()

        universe = meta.get("universe", [])
        for i, u in enumerate(universe):
            if u.get("name") == ticker and i < len(asset_ctxs):
                ctx = asset_ctxs[i]
                break
        else:
            raise DataUnavailable(f"{ticker} not in Hyperliquid universe", missing=[ticker])

        max_leverage = float(u.get("maxLeverage", 0) or 0)
        imf = 1.0 / max_leverage if max_leverage > 0 else 1.0
        oracle = ctx.get("oraclePx") or ctx.get("markPx") or 0.0

        state = HedgeInstrumentState(
            instrument_id=instrument.id,
            timestamp=self.now(),
            funding_rate=float(ctx.get("funding", 0.0)),
            initial_margin_fraction=imf,
            maintenance_margin_fraction=imf / 2.0,
            oracle_price=float(oracle),
            open_interest=float(ctx.get("openInterest", 0.0)),
        )
        state_id = self.store.append(state)
        print(f"[HedgePoller] {ticker} oracle={state.oracle_price} funding={state.funding_rate:.6f} imf={imf:.4f}")
        return replace(state, id=state_id)
