"""
Tests for the observation store: monotonic appends, strictly-after reads
and database errors surfacing as PersistenceFailure.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import T0, make_hedge_state, make_price, make_state
from yield_rebalancer.core.errors import DataInconsistent, PersistenceFailure
from yield_rebalancer.data.entities import NOT_YET_AVAILABLE, EntityRef


class TestReferenceData:
    def test_registration_is_get_or_create(self, store, universe):
        again = store.register_token("0xeth", "ETH")
        assert again.id == universe.eth.id

        market = store.register_market("0xmarket-eth", universe.eth.id, universe.eth.id, universe.usdc.id)
        assert market.id == universe.eth_market.id

        assert store.register_hedge_instrument("ETH").id == universe.hedge.id

    def test_lookups(self, store, universe):
        assert [m.id for m in store.list_markets()] == [universe.eth_market.id, universe.btc_market.id]
        assert store.get_market(universe.btc_market.id).index_token_id == universe.btc.id
        assert store.get_token(universe.usdc.id).decimals == 6
        assert store.find_hedge_instrument("ETH").underlying_symbol == "ETH"
        assert store.find_hedge_instrument("SOL") is None
        assert store.get_market(999) is None


class TestAppend:
    def test_older_append_is_rejected(self, store, universe):
        store.append(make_price(universe.eth.id, T0))

        with pytest.raises(DataInconsistent):
            store.append(make_price(universe.eth.id, T0 - timedelta(seconds=1)))

    def test_equal_timestamp_is_accepted(self, store, universe):
        first = store.append(make_price(universe.eth.id, T0, mid=2000.0))
        second = store.append(make_price(universe.eth.id, T0, mid=2001.0))
        assert second > first

    def test_monotonicity_is_per_entity(self, store, universe):
        store.append(make_price(universe.eth.id, T0))
        store.append(make_price(universe.btc.id, T0 - timedelta(hours=1)))


class TestGetLatestOrAfter:
    def test_strictly_after(self, store, universe):
        ref = EntityRef.token(universe.eth.id)
        store.append(make_price(universe.eth.id, T0, mid=1.0))
        store.append(make_price(universe.eth.id, T0 + timedelta(minutes=1), mid=2.0))
        store.append(make_price(universe.eth.id, T0 + timedelta(minutes=2), mid=3.0))

        obs = store.get_latest_or_after(ref, T0)

        assert obs.mid_price == 2.0
        assert obs.timestamp == T0 + timedelta(minutes=1)
        assert obs.id is not None

    def test_equal_timestamps_resolve_to_lowest_id(self, store, universe):
        ref = EntityRef.market(universe.eth_market.id)
        ts = T0 + timedelta(minutes=1)
        first = store.append(make_state(universe.eth_market.id, ts, fees=100.0))
        store.append(make_state(universe.eth_market.id, ts, fees=200.0))

        obs = store.get_latest_or_after(ref, T0)

        assert obs.id == first
        assert obs.fees_total == 100.0

    def test_nothing_after_reference(self, store, universe):
        store.append(make_hedge_state(universe.hedge.id, T0))

        assert store.get_latest_or_after(EntityRef.hedge(universe.hedge.id), T0) is NOT_YET_AVAILABLE

    def test_market_state_round_trips_every_field(self, store, universe):
        original = make_state(universe.btc_market.id, T0 + timedelta(minutes=1), i=2)
        store.append(original)

        obs = store.get_latest_or_after(EntityRef.market(universe.btc_market.id), T0)

        assert obs.pool_value_usd == original.pool_value_usd
        assert obs.net_oi_via_tokens == original.net_oi_via_tokens
        assert obs.pnl_net == original.pnl_net
        assert obs.utilization == original.utilization

    def test_hedge_state_round_trip(self, store, universe):
        store.append(make_hedge_state(universe.hedge.id, T0 + timedelta(seconds=5), oracle=1999.5, imf=0.04))

        obs = store.get_latest_or_after(EntityRef.hedge(universe.hedge.id), T0)

        assert obs.oracle_price == 1999.5
        assert obs.initial_margin_fraction == 0.04


class TestHistory:
    def test_inclusive_range_oldest_first(self, store, universe):
        for i in range(6):
            store.append(make_state(universe.eth_market.id, T0 + timedelta(hours=i), i=i))

        history = store.get_history(EntityRef.market(universe.eth_market.id), T0 + timedelta(hours=1), T0 + timedelta(hours=4))

        assert [h.timestamp for h in history] == [T0 + timedelta(hours=i) for i in range(1, 5)]

    def test_other_entities_excluded(self, store, universe):
        store.append(make_state(universe.eth_market.id, T0))
        store.append(make_state(universe.btc_market.id, T0))

        history = store.get_history(EntityRef.market(universe.btc_market.id), T0 - timedelta(hours=1), T0)

        assert [h.market_id for h in history] == [universe.btc_market.id]


class TestReadFailures:
    @pytest.fixture
    def broken_store(self, store, universe, monkeypatch):
        error = OperationalError("SELECT", {}, Exception("disk I/O error"))
        monkeypatch.setattr(store, "session_factory", MagicMock(side_effect=error))
        return store

    def test_latest_or_after(self, broken_store, universe):
        with pytest.raises(PersistenceFailure, match="read failed"):
            broken_store.get_latest_or_after(EntityRef.token(universe.eth.id), T0)

    def test_history(self, broken_store, universe):
        with pytest.raises(PersistenceFailure, match="read failed"):
            broken_store.get_history(EntityRef.market(universe.eth_market.id), T0, T0)

    def test_registry_lookup(self, broken_store, universe):
        with pytest.raises(PersistenceFailure):
            broken_store.get_market(universe.eth_market.id)
