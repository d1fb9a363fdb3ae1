import asyncio, logging
import orjson
import pytest
from decimal import Decimal

from cryptopulse.core import (
	UpstreamIngestor,
	IngestState,
	REINIT_ALL,
	REINIT_MISSING,
)
from cryptopulse.state import LiveStateStore
from cryptopulse.universe import InstrumentUniverse

logger = logging.getLogger("test")

#———————————————————————————————————————————————————————————————————————————————

class FakeUpstream:

	def __init__(self, messages):
		self.messages = messages

	async def __aenter__(self):
		return self

	async def __aexit__(self, *exc):
		return False

	def __aiter__(self):
		return self._iter()

	async def _iter(self):
		for message in self.messages:
			yield message

class Recorder:

	def __init__(self):
		self.batches = []

	async def publish(self, batch):
		self.batches.append(batch)
		return 0

def ticker(*records):
	return orjson.dumps([
		{"s": s, "c": c, "P": p, "E": 1} for s, c, p in records
	])

def make_ingestor(sessions, reinit_on_open=REINIT_MISSING):

	universe = InstrumentUniverse(["BTCUSDT", "ETHUSDT"])
	store = LiveStateStore(universe)
	shutdown_event = asyncio.Event()
	connects, sleeps = [], []

	def connect(url, **kwargs):
		connects.append(url)
		return FakeUpstream(sessions[len(connects) - 1])

	async def sleep(sec):
		sleeps.append((sec, len(connects)))
		if len(connects) == len(sessions):
			shutdown_event.set()

	ingestor = UpstreamIngestor(
		"wss://example.invalid/ws",
		universe,
		store,
		Recorder(),
		logger,
		reconnect_delay_sec = 5.0,
		reinit_on_open = reinit_on_open,
		connect = connect,
		sleep = sleep,
		clock_ms = lambda: 1_000,
	)

	return ingestor, store, shutdown_event, connects, sleeps

#———————————————————————————————————————————————————————————————————————————————

def test_batch_is_filtered_normalized_and_forwarded():
	ingestor, store, *_ = make_ingestor([[]])

	batch = asyncio.run(ingestor.handle_message(ticker(
		("BTCUSDT", "67000.50", "1.25"),
		("BTCUPUSDT", "1.0", "9.0"),
		("ETHBTC", "0.05", "0.1"),
	)))

	assert [t.symbol for t in batch] == ["BTCUSDT"]
	assert batch[0].price == Decimal("67000.50")
	assert batch[0].timestamp_ms == 1_000
	assert ingestor.broadcaster.batches == [batch]
	assert store.get("BTCUSDT").price == Decimal("67000.50")

def test_unparsable_and_non_array_messages_are_dropped():
	ingestor, *_ = make_ingestor([[]])

	assert asyncio.run(ingestor.handle_message(b"{not json")) is None
	assert asyncio.run(ingestor.handle_message(b'{"s": "BTCUSDT"}')) is None
	assert ingestor.dropped_batches == 2
	assert ingestor.broadcaster.batches == []

def test_malformed_record_is_skipped_within_batch():
	ingestor, store, *_ = make_ingestor([[]])

	raw = orjson.dumps([
		{"s": "BTCUSDT", "c": "oops", "P": "1"},
		{"s": "ETHUSDT", "c": "3500", "P": "-2"},
	])
	batch = asyncio.run(ingestor.handle_message(raw))

	assert [t.symbol for t in batch] == ["ETHUSDT"]
	assert store.get("BTCUSDT").is_sentinel

def test_empty_batch_is_still_forwarded():
	ingestor, *_ = make_ingestor([[]])

	assert asyncio.run(ingestor.handle_message(b"[]")) == []
	assert ingestor.broadcaster.batches == [[]]

def test_reconnects_once_per_delay_and_keeps_known_prices():
	ingestor, store, shutdown_event, connects, sleeps = make_ingestor([
		[ticker(("BTCUSDT", "67000.50", "1.25"))],
		[],
	])

	asyncio.run(ingestor.run(shutdown_event))

	assert len(connects) == 2
	# one delay before the second attempt, each at the fixed interval
	assert sleeps == [(5.0, 1), (5.0, 2)]
	assert ingestor.connect_count == 2
	assert ingestor.state is IngestState.DISCONNECTED
	assert store.get("BTCUSDT").price == Decimal("67000.50")
	assert store.get("ETHUSDT").is_sentinel

def test_reinit_all_resets_every_instrument_on_reconnect():
	ingestor, store, shutdown_event, *_ = make_ingestor(
		[[ticker(("BTCUSDT", "67000.50", "1.25"))], []],
		reinit_on_open = REINIT_ALL,
	)

	asyncio.run(ingestor.run(shutdown_event))

	assert store.get("BTCUSDT").is_sentinel

def test_connect_failure_is_retried():

	universe = InstrumentUniverse(["BTCUSDT"])
	store = LiveStateStore(universe)
	shutdown_event = asyncio.Event()
	attempts = []

	def connect(url, **kwargs):
		attempts.append(url)
		if len(attempts) == 1:
			raise OSError("connection refused")
		return FakeUpstream([])

	async def sleep(sec):
		if len(attempts) == 2:
			shutdown_event.set()

	ingestor = UpstreamIngestor(
		"wss://example.invalid/ws", universe, store, Recorder(), logger,
		connect = connect, sleep = sleep,
	)

	asyncio.run(ingestor.run(shutdown_event))

	assert len(attempts) == 2
	assert ingestor.connect_count == 1

def test_invalid_reinit_policy_is_rejected():
	with pytest.raises(ValueError):
		make_ingestor([[]], reinit_on_open="sometimes")
