import logging
from decimal import Decimal

import pytest

from cryptopulse.core import filter_records
from cryptopulse.state import LiveStateStore, LiveTick
from cryptopulse.universe import InstrumentUniverse

logger = logging.getLogger("test")

def make_universe():
	return InstrumentUniverse(["BTCUSDT", "ETHUSDT", "SOLUSDT"])

def tick(symbol, price, change="0", ts=1):
	return LiveTick(symbol, Decimal(price), Decimal(change), ts)

def test_universe_drops_leveraged_and_foreign_quotes():
	universe = InstrumentUniverse(
		["btcusdt", "BTCUPUSDT", "ETHBTC", "ETHDOWNUSDT", "BTCUSDT"],
		logger = logger,
	)
	assert universe.symbols == ("BTCUSDT",)

def test_filter_keeps_only_spot_quote_members():
	universe = InstrumentUniverse(["BTCUSDT", "BTCUPUSDT", "ETHBTC"])
	records = [
		{"s": "BTCUSDT", "c": "1", "P": "0"},
		{"s": "BTCUPUSDT", "c": "1", "P": "0"},
		{"s": "ETHBTC", "c": "1", "P": "0"},
	]
	assert [r["s"] for r in filter_records(records, universe)] == ["BTCUSDT"]

def test_get_all_has_one_entry_per_universe_instrument():
	store = LiveStateStore(make_universe())
	store.init_sentinels()
	store.set("ETHUSDT", tick("ETHUSDT", "3500.1"))
	store.set("ETHUSDT", tick("ETHUSDT", "3501.2"))
	store.set("BTCUSDT", tick("BTCUSDT", "67000"))

	with pytest.raises(ValueError):
		store.set("DOGEUSDT", tick("DOGEUSDT", "0.1"))

	snapshot = store.get_all()
	assert [s for s, _ in snapshot] == ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
	assert snapshot[1][1].price == Decimal("3501.2")
	assert snapshot[2][1].is_sentinel

def test_partial_batch_leaves_absent_instrument_unchanged():
	store = LiveStateStore(make_universe())
	store.set("BTCUSDT", tick("BTCUSDT", "1"))
	store.set("ETHUSDT", tick("ETHUSDT", "2"))
	store.set("SOLUSDT", tick("SOLUSDT", "3"))
	before = store.get("ETHUSDT")

	for t in (tick("BTCUSDT", "10"), tick("SOLUSDT", "30")):
		store.set(t.symbol, t)

	assert store.get("BTCUSDT").price == Decimal("10")
	assert store.get("SOLUSDT").price == Decimal("30")
	assert store.get("ETHUSDT") is before

def test_init_sentinels_only_missing_keeps_real_ticks():
	store = LiveStateStore(make_universe())
	store.set("BTCUSDT", tick("BTCUSDT", "67000"))

	assert store.init_sentinels(only_missing=True) == 2
	assert store.get("BTCUSDT").price == Decimal("67000")
	assert store.populated_count() == 1

	assert store.init_sentinels(only_missing=False) == 3
	assert store.get("BTCUSDT").is_sentinel

def test_wire_record_uses_ticker_keys():
	assert tick("BTCUSDT", "67000.50", "-1.25").to_wire() == {
		"s": "BTCUSDT", "c": "67000.50", "P": "-1.25",
	}
