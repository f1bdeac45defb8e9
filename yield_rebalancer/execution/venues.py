"""
Execution Venues

submit(trade) -> PendingHandle, poll(handle) -> Confirmed | Failed | Pending,
cancel(handle) withdraws an order that outlived its confirmation timeout.

PaperVenue simulates fills for paper mode and tests. HyperliquidHedgeVenue
places the hedge perp order through the Hyperliquid SDK. Pool deposits and
withdrawals on the pool protocol are an external collaborator implementing
the same protocol.
"""

import hashlib
import itertools
import threading
import time
from typing import Callable, Dict, Optional, Protocol

from hyperliquid.exchange import Exchange
from hyperliquid.info import Info
from hyperliquid.utils.types import Cloid

from yield_rebalancer.core.config import Config
from yield_rebalancer.core.errors import ExecutionFailure
from yield_rebalancer.execution.orders import (
    Confirmed,
    Failed,
    Pending,
    PendingHandle,
    PollResult,
    Trade,
)
from yield_rebalancer.utils.precision import format_size
from yield_rebalancer.utils.retry import RetryPolicy, call_with_retries


class ExecutionVenue(Protocol):
    def submit(self, trade: Trade) -> PendingHandle:
        ...

    def poll(self, handle: PendingHandle) -> PollResult:
        ...

    def cancel(self, handle: PendingHandle) -> None:
        ...


class PaperVenue:
    """
    Simulated venue: every submission confirms on the first poll with a
    deterministic reference derived from the trade.
    """

    def __init__(self, fee_bps: float = 0.0, clock: Callable[[], float] = time.monotonic):
        self.fee_bps = fee_bps
        self.clock = clock
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self.submitted: Dict[str, Trade] = {}

    def submit(self, trade: Trade) -> PendingHandle:
        with self._lock:
            seq = next(self._seq)
        base = f"{trade.strategy_run_id}|{trade.id}|{trade.action.value}|{trade.market_id}|{round(trade.usd_value, 8)}|{round(trade.size, 8)}|{seq}"
        reference = hashlib.sha256(base.encode()).hexdigest()[:32]
        self.submitted[reference] = trade
        return PendingHandle(reference=reference, submitted_at=self.clock(), trade_id=trade.id)

    def poll(self, handle: PendingHandle) -> PollResult:
        trade = self.submitted.get(handle.reference)
        if trade is None:
            return Failed(reason=f"unknown reference {handle.reference}")
        fee = trade.usd_value * self.fee_bps / 10_000.0
        return Confirmed(tx_hash=f"paper-{handle.reference}", fee_usd=fee)

    def cancel(self, handle: PendingHandle) -> None:
        pass


class HyperliquidHedgeVenue:
    """
    Hedge perp orders on Hyperliquid.

    Orders go out as IOC market orders (Exchange.market_open with a slippage
    cap) tagged with a deterministic client order id; confirmation is read
    back with Info.query_order_by_cloid.
    """

    def __init__(
        self,
        config: Config,
        exchange: Exchange,
        info: Info,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.exchange = exchange
        self.info = info
        self.clock = clock
        self.sleep = sleep
        self.api_error_count: int = 0
        self._coins: Dict[str, str] = {}  # cloid -> coin
        self._retry_policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay_sec=config.retry.base_delay_sec,
            factor=config.retry.factor,
            max_delay_sec=config.retry.max_delay_sec,
        )

    def submit(self, trade: Trade) -> PendingHandle:
        hedge_cfg = self.config.hedge
        coin = trade.ticker or hedge_cfg.ticker
        is_buy = trade.remaining_size > 0
        sz = float(format_size(abs(trade.remaining_size), hedge_cfg.sz_decimals))
        if sz <= 0:
            raise ExecutionFailure(f"hedge size {trade.remaining_size} rounds to zero", trade_id=trade.id)

        cloid = self._make_cloid(trade, coin, is_buy, sz)
        resp = self._with_retries(
            self.exchange.market_open, coin, is_buy, sz, None, hedge_cfg.max_slippage, Cloid.from_str(cloid)
        )
        error = self._order_error(resp)
        if error:
            raise ExecutionFailure(f"{coin} order rejected: {error}", trade_id=trade.id)
        self._coins[cloid] = coin
        print(f"[HedgeVenue] Submitted {'Buy' if is_buy else 'Sell'} {sz} {coin} (cloid={cloid})")
        return PendingHandle(reference=cloid, submitted_at=self.clock(), trade_id=trade.id)

    def poll(self, handle: PendingHandle) -> PollResult:
        resp = self._with_retries(
            self.info.query_order_by_cloid, self.config.hedge.address, Cloid.from_str(handle.reference)
        )
        if not isinstance(resp, dict) or resp.get("status") != "order":
            return Pending()

        order_info = resp.get("order") or {}
        status = order_info.get("status")
        order = order_info.get("order") or {}
        if status in ("open", "triggered"):
            return Pending()

        filled = float(order.get("origSz", 0.0)) - float(order.get("sz", 0.0))
        signed = filled if order.get("side") == "B" else -filled
        tx_hash = f"hl:{order.get('oid')}"
        if status == "filled":
            return Confirmed(tx_hash=tx_hash, filled_size=signed)
        if filled > 0:
            # IOC remainder canceled after a partial fill
            return Failed(reason=f"order {status} after filling {filled:g}", filled_size=signed, tx_hash=tx_hash)
        return Failed(reason=f"order {status}")

    def cancel(self, handle: PendingHandle) -> None:
        """Cancel by cloid. A reject here usually means the order already filled or expired."""
        coin = self._coins.get(handle.reference, self.config.hedge.ticker)
        resp = self._with_retries(self.exchange.cancel_by_cloid, coin, Cloid.from_str(handle.reference))
        error = self._order_error(resp)
        if error:
            print(f"[HedgeVenue] Cancel {handle.reference} not applied: {error}")
        else:
            print(f"[HedgeVenue] Canceled {coin} order {handle.reference}")

    # ------------------------
    # Helpers
    # ------------------------
    @staticmethod
    def _order_error(resp) -> Optional[str]:
        if not isinstance(resp, dict):
            return "empty response"
        if resp.get("status") != "ok":
            return str(resp.get("response"))
        statuses = ((resp.get("response") or {}).get("data") or {}).get("statuses") or []
        for s in statuses:
            if isinstance(s, dict) and "error" in s:
                return s["error"]
        return None

    def _make_cloid(self, trade: Trade, coin: str, is_buy: bool, sz: float) -> str:
        """Deterministic client order id: one per (trade, attempt)."""
        base = f"{trade.strategy_run_id}|{trade.id}|{trade.attempts}|{coin}|{int(is_buy)}|{round(sz, 8)}"
        return "0x" + hashlib.sha256(base.encode()).hexdigest()[:32]

    def _with_retries(self, func, *args, **kwargs):
        """Call SDK function with retries/backoff on transport errors and error tracking."""

        def on_error(attempt: int, e: BaseException):
            self.api_error_count += 1
            print(f"[HedgeVenue] {getattr(func, '__name__', 'call')} attempt {attempt} failed: {e}")

        return call_with_retries(
            func,
            *args,
            policy=self._retry_policy,
            retry_on=(ConnectionError, TimeoutError, OSError),
            sleep=self.sleep,
            on_error=on_error,
            **kwargs,
        )
