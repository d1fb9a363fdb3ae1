import asyncio, logging
import orjson
from datetime import timezone
from decimal import Decimal

from cryptopulse.favorites import FavoriteStore
from cryptopulse.klines import UpstreamError
from cryptopulse.reconcile import (
	ReconciliationEngine,
	HistoryBuffer,
	format_price,
	format_change,
	direction,
	format_label,
)
from cryptopulse.universe import InstrumentUniverse

logger = logging.getLogger("test")

HOUR_MS  = 3_600_000
START_MS = 1_699_999_200_000	# 2023-11-14 22:00:00 UTC

def candles(n, first=100):
	return [
		[START_MS + i * HOUR_MS, "0", "0", "0", str(first + i), "0"]
		for i in range(n)
	]

class FakeFetcher:

	def __init__(self, result):
		self.result = result
		self.calls = []

	async def fetch(self, symbol, interval, limit):
		self.calls.append((symbol, interval, limit))
		if isinstance(self.result, Exception):
			raise self.result
		return self.result

def make_engine(fetcher=None, favorites=(), interval="1h", limit=24):
	store = FavoriteStore(None, logger)
	for symbol in favorites:
		store.toggle(symbol)
	return ReconciliationEngine(
		InstrumentUniverse(["BTCUSDT", "ETHUSDT", "SOLUSDT"]),
		store,
		fetcher or FakeFetcher(candles(24)),
		logger,
		interval = interval,
		limit = limit,
		tz = timezone.utc,
		clock_ms = lambda: START_MS + 30 * HOUR_MS,
	)

def batch(*records):
	return orjson.dumps([{"s": s, "c": c, "P": p} for s, c, p in records])

#———————————————————————————————————————————————————————————————————————————————

def test_derived_fields():
	assert format_price(Decimal("67012.345")) == "$67,012.35"
	assert format_price(Decimal("0.48215")) == "$0.4822"
	assert format_price(Decimal("1")) == "$1.00"
	assert format_change(Decimal("1.005")) == "1.01%"
	assert format_change(Decimal("-0.5")) == "-0.50%"
	assert direction(Decimal("0")) == "up"
	assert direction(Decimal("-0.01")) == "down"

def test_labels_follow_interval():
	assert format_label(START_MS, "1h", timezone.utc) == "22:00"
	assert format_label(START_MS + 90_000, "1m", timezone.utc) == "22:01"

def test_favorites_sort_first_then_universe_order():
	engine = make_engine(favorites=["SOLUSDT"])

	engine.apply_message(batch(
		("ETHUSDT", "3500", "1"),
		("SOLUSDT", "150", "2"),
		("BTCUSDT", "67000", "3"),
	))

	assert [r.symbol for r in engine.rows()] == ["SOLUSDT", "BTCUSDT", "ETHUSDT"]

	engine.toggle_favorite("SOLUSDT")
	assert [r.symbol for r in engine.rows()] == ["BTCUSDT", "ETHUSDT", "SOLUSDT"]

def test_rows_replaced_per_instrument_and_unknown_last():
	engine = make_engine()

	engine.apply_message(batch(
		("XYZUSDT", "1", "0"),
		("BTCUSDT", "67000", "1.5"),
		("ETHUSDT", "3500", "-2"),
	))
	engine.apply_message(batch(("BTCUSDT", "68000", "2.5")))

	rows = engine.rows()
	assert [r.symbol for r in rows] == ["BTCUSDT", "ETHUSDT", "XYZUSDT"]
	assert rows[0].price_text == "$68,000.00"
	assert rows[1].change_text == "-2.00%"
	assert rows[1].direction == "down"

def test_malformed_messages_change_nothing():
	engine = make_engine()

	assert engine.apply_message(b"not json") == 0
	assert engine.apply_message(b'{"s": "BTCUSDT"}') == 0
	assert engine.apply_message(orjson.dumps([{"s": "BTCUSDT", "c": "x", "P": "1"}])) == 0
	assert engine.rows() == []

def test_history_buffer_never_grows_on_live_ticks():
	engine = make_engine()
	buffer = asyncio.run(engine.select("btcusdt"))
	fetched = buffer.points

	assert len(buffer) == 24

	for i in range(1000):
		engine.apply_message(batch(("BTCUSDT", str(200 + i), "1")))

	assert len(buffer) == 24
	assert buffer.points[:-1] == fetched[:-1]
	assert buffer.last.price == Decimal("1199")
	assert engine.fetcher.calls == [("BTCUSDT", "1h", 24)]

def test_live_tick_with_same_price_keeps_last_point():
	engine = make_engine()
	buffer = asyncio.run(engine.select("BTCUSDT"))
	last = buffer.last

	engine.apply_message(batch(("BTCUSDT", "123", "1")))

	assert buffer.last is last

def test_change_from_open_fixed_until_next_fetch():
	engine = make_engine()
	buffer = asyncio.run(engine.select("BTCUSDT"))

	assert buffer.change_from_open == Decimal("23")

	engine.apply_message(batch(("BTCUSDT", "150", "1")))
	assert buffer.change_from_open == Decimal("23")

	engine.fetcher.result = candles(24, first=200)
	fresh = asyncio.run(engine.select("BTCUSDT"))
	assert fresh.change_from_open == Decimal("11.5")
	assert engine.history("BTCUSDT") is fresh

def test_failed_fetch_leaves_buffers_untouched():
	engine = make_engine()
	btc = asyncio.run(engine.select("BTCUSDT"))
	eth = asyncio.run(engine.select("ETHUSDT"))

	engine.fetcher.result = UpstreamError("relay down")
	assert asyncio.run(engine.select("BTCUSDT")) is None

	engine.fetcher.result = [["garbage"]]
	assert asyncio.run(engine.select("SOLUSDT")) is None

	assert engine.history("BTCUSDT") is btc
	assert engine.history("ETHUSDT") is eth
	assert engine.history("SOLUSDT") is None

def test_refresh_restamps_last_point_with_live_price():
	engine = make_engine(interval="1m", limit=60)
	engine.fetcher.result = candles(60)
	buffer = asyncio.run(engine.select("BTCUSDT"))
	asyncio.run(engine.select("ETHUSDT"))

	assert engine.refresh(START_MS) == 0

	engine.apply_message(batch(("BTCUSDT", "500", "1")))
	assert engine.refresh(START_MS + 5 * 60_000) == 1

	assert buffer.last.price == Decimal("500")
	assert buffer.last.label == "22:05"
	assert len(buffer) == 60

def test_from_candles_keeps_only_limit_points():
	buffer = HistoryBuffer.from_candles("BTCUSDT", candles(30), "1h", 24, timezone.utc)

	assert len(buffer) == 24
	assert buffer.points[0].price == Decimal("106")

def test_placeholder_price_never_reaches_history():
	engine = make_engine(interval="1m", limit=60)
	engine.fetcher.result = candles(60)
	buffer = asyncio.run(engine.select("BTCUSDT"))
	fetched = buffer.last

	engine.apply_message(batch(("BTCUSDT", "0", "0")))

	assert engine.row("BTCUSDT").price_text == "$0.0000"
	assert buffer.last == fetched
	assert engine.refresh(START_MS + 5 * 60_000) == 0
	assert buffer.last.price == Decimal("159")

	engine.apply_message(batch(("BTCUSDT", "0", "0"), ("BTCUSDT", "160", "1")))
	engine.apply_message(batch(("BTCUSDT", "0", "0")))
	engine.refresh(START_MS + 6 * 60_000)

	assert buffer.last.price == Decimal("160")

def test_claim_history_once_and_retry_after_failure():
	now = [START_MS]
	engine = make_engine(fetcher=FakeFetcher(UpstreamError("relay down")))
	engine.retry_sec = 30.0
	engine._clock_ms = lambda: now[0]

	engine.apply_message(batch(
		("BTCUSDT", "67000", "1"),
		("DOGEUSDT", "0.1", "1"),
	))

	assert engine.claim_history() == ["BTCUSDT"]
	assert engine.claim_history() == []

	assert asyncio.run(engine.select("BTCUSDT")) is None
	assert engine.claim_history() == []

	now[0] += 31_000
	assert engine.claim_history() == ["BTCUSDT"]

	engine.fetcher.result = candles(24)
	assert asyncio.run(engine.select("BTCUSDT")) is not None
	now[0] += 31_000
	assert engine.claim_history() == []
