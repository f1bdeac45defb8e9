"""
Pytest configuration and fixtures for the yield rebalancer tests.

Store and ledger tests run against an in-memory SQLite database; aligner and
coordinator tests use in-process fakes for sources and venues.
"""

import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from yield_rebalancer.core.config import Config
from yield_rebalancer.data.entities import (
    NOT_YET_AVAILABLE,
    HedgeInstrumentState,
    MarketStateObservation,
    TokenPriceObservation,
)
from yield_rebalancer.data.store import ObservationStore
from yield_rebalancer.execution.orders import Confirmed, Failed, Pending, PendingHandle
from yield_rebalancer.ledger.run_ledger import RunLedger
from yield_rebalancer.ledger.schema import init_schema, make_engine, make_session_factory

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

ENV_OVERRIDES = ("DATABASE_URL", "STRATEGY_VERSION", "EXECUTION_MODE", "HL_NETWORK", "HL_ADDRESS", "HL_SECRET_KEY")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Config reads overrides from the environment; keep tests independent of the shell."""
    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def config():
    cfg = Config()
    cfg.retry.jitter = 0.0
    cfg.ledger.database_url = "sqlite://"
    return cfg


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return ObservationStore(session_factory)


@pytest.fixture
def ledger(session_factory):
    return RunLedger(session_factory)


@pytest.fixture
def universe(store):
    """Two ETH/BTC pool markets sharing USDC as short token, plus an ETH hedge perp."""
    eth = store.register_token("0xeth", "ETH")
    btc = store.register_token("0xbtc", "BTC", decimals=8)
    usdc = store.register_token("0xusdc", "USDC", decimals=6)
    eth_market = store.register_market("0xmarket-eth", eth.id, eth.id, usdc.id, "ETH/USD [ETH-USDC]")
    btc_market = store.register_market("0xmarket-btc", btc.id, btc.id, usdc.id, "BTC/USD [BTC-USDC]")
    hedge = store.register_hedge_instrument("ETH")
    return SimpleNamespace(
        eth=eth,
        btc=btc,
        usdc=usdc,
        eth_market=eth_market,
        btc_market=btc_market,
        markets=[eth_market, btc_market],
        hedge=hedge,
    )


def make_state(market_id, ts, i=0, fees=800.0, **overrides) -> MarketStateObservation:
    """Plausible pool state with a little period-to-period variation."""
    values = dict(
        borrowing_factor_long=1e-6,
        borrowing_factor_short=1e-6,
        pnl_long=500.0 * ((i % 3) - 1),
        pnl_short=-200.0 * ((i % 2) - 0.5),
        pnl_net=1000.0 * ((i % 3) - 1),
        pool_long_amount=3000.0,
        pool_short_amount=4e6,
        pool_long_usd=6e6,
        pool_short_usd=4e6,
        open_interest_long=2e6,
        open_interest_short=1.5e6,
        open_interest_long_via_tokens=1e6,
        open_interest_short_via_tokens=0.5e6,
        utilization=0.4,
        swap_volume=1e6,
        trading_volume=5e6,
        fees_position=fees * 0.6,
        fees_liquidation=0.0,
        fees_swap=fees * 0.3,
        fees_borrowing=100.0,
        fees_total=fees + 50.0 * (i % 4),
    )
    values.update(overrides)
    return MarketStateObservation(market_id=market_id, timestamp=ts, **values)


def make_history(market_id, end, count=12, step=timedelta(hours=1), fees=800.0, **overrides):
    """`count` states ending at `end`, oldest first."""
    start = end - step * (count - 1)
    return [make_state(market_id, start + step * i, i=i, fees=fees, **overrides) for i in range(count)]


def make_price(token_id, ts, mid=2000.0) -> TokenPriceObservation:
    return TokenPriceObservation(token_id=token_id, timestamp=ts, min_price=mid * 0.999, max_price=mid * 1.001, mid_price=mid)


def make_hedge_state(instrument_id, ts, oracle=2000.0, imf=0.02) -> HedgeInstrumentState:
    return HedgeInstrumentState(
        instrument_id=instrument_id,
        timestamp=ts,
        funding_rate=0.0000125,
        initial_margin_fraction=imf,
        maintenance_margin_fraction=imf / 2,
        oracle_price=oracle,
        open_interest=1000.0,
    )


def seed_cycle_data(store, universe, reference_time, after=timedelta(minutes=1)):
    """History up to T and one observation per entity just after T."""
    for market, fees in ((universe.eth_market, 900.0), (universe.btc_market, 600.0)):
        for obs in make_history(market.id, reference_time - timedelta(minutes=30), fees=fees):
            store.append(obs)
        store.append(make_state(market.id, reference_time + after, i=5, fees=fees))
    store.append(make_price(universe.eth.id, reference_time + after, mid=2000.0))
    store.append(make_price(universe.btc.id, reference_time + after, mid=60000.0))
    store.append(make_hedge_state(universe.hedge.id, reference_time + after))


class FakeSource:
    """In-memory ObservationSource with strictly-after semantics and fault injection."""

    def __init__(self, observations=()):
        self.observations = list(observations)
        self.calls = []
        self.transient_failures = {}  # entity -> remaining ConnectionErrors
        self.overrides = {}  # entity -> value to return verbatim
        self.block = {}  # entity -> threading.Event to wait on
        self._lock = threading.Lock()

    def get_latest_or_after(self, entity, timestamp):
        with self._lock:
            self.calls.append(entity)
            remaining = self.transient_failures.get(entity, 0)
            if remaining:
                self.transient_failures[entity] = remaining - 1
                raise ConnectionError(f"transient failure for {entity}")
        if entity in self.block:
            self.block[entity].wait(5)
        if entity in self.overrides:
            return self.overrides[entity]
        candidates = [
            (i, o) for i, o in enumerate(self.observations)
            if o.entity == entity and o.timestamp > timestamp
        ]
        if not candidates:
            return NOT_YET_AVAILABLE
        return min(candidates, key=lambda c: (c[1].timestamp, c[0]))[1]


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedVenue:
    """
    Venue whose poll results are scripted per market (or ticker for hedges).

    `script[key]` is a list of results consumed one per submission; the last
    entry repeats. Default is an immediate confirmation.
    """

    def __init__(self, clock=None, script=None):
        self.clock = clock or FakeClock()
        self.script = script or {}
        self.submissions = []
        self.cancels = []
        self._results = {}
        self._lock = threading.Lock()

    def submit(self, trade):
        with self._lock:
            n = len(self.submissions)
            self.submissions.append(trade)
        key = trade.ticker if trade.is_hedge else trade.market_id
        plan = self.script.get(key, ["confirm"])
        step = plan[min(trade.attempts - 1, len(plan) - 1)] if trade.attempts else plan[0]
        if step == "submit_error":
            raise ConnectionError("venue unreachable")
        ref = f"ref-{n}"
        self._results[ref] = step
        return PendingHandle(reference=ref, submitted_at=self.clock.time(), trade_id=trade.id)

    def poll(self, handle):
        step = self._results[handle.reference]
        if step == "confirm":
            return Confirmed(tx_hash=f"0x{handle.reference}")
        if step == "pending":
            return Pending()
        return Failed(reason=step)

    def cancel(self, handle):
        self.cancels.append(handle.reference)
