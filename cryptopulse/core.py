# core.py

#———————————————————————————————————————————————————————————————————————————————
# Upstream Ingestor
#
#	wss://stream.binance.com:9443/ws/!ticker@arr
#
# One upstream connection at a time. Each inbound message is one batch:
#	parse → filter (universe, quote suffix, leverage markers) → normalize
#	→ LiveStateStore.set() → Broadcaster.publish()
#
# Reconnection is a fixed-delay, unlimited retry:
#
#	DISCONNECTED ──(attempt)──▶ CONNECTING ──(open)──▶ CONNECTED
#	     ▲                          │                      │
#	     └───(delay elapsed)────────┴───(close / error)────┘
#
# A new attempt starts only after `async with websockets.connect()` has
# exited, i.e. after the previous connection has fully closed.
#———————————————————————————————————————————————————————————————————————————————

import asyncio, logging, orjson
import websockets
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from cryptopulse.broadcast import Broadcaster
from cryptopulse.state import LiveStateStore, LiveTick
from cryptopulse.universe import InstrumentUniverse
from cryptopulse.util import (
	my_name,
	get_current_time_ms,
	get_ssl_context,
	ensure_logging_on_exception,
)

#———————————————————————————————————————————————————————————————————————————————

class IngestState(str, Enum):

	DISCONNECTED = "disconnected"
	CONNECTING	 = "connecting"
	CONNECTED	 = "connected"

#———————————————————————————————————————————————————————————————————————————————

REINIT_ALL	   = "all"			# reference behavior: wipe to sentinels
REINIT_MISSING = "missing"		# keep known-good prices across reconnects

#———————————————————————————————————————————————————————————————————————————————

def filter_records(
	records:  list[Any],
	universe: InstrumentUniverse,
) -> list[dict]:

	return [
		item for item in records
		if isinstance(item, dict)
		and universe.accepts(item.get("s"))
	]

#———————————————————————————————————————————————————————————————————————————————

def normalize_record(
	item:		  dict,
	timestamp_ms: int,
) -> LiveTick:

	"""
	Raw ticker record → LiveTick. The timestamp is the local receipt time;
	exchange-side event times are not used.
	"""

	try:

		return LiveTick(
			symbol		 = item["s"],
			price		 = Decimal(str(item["c"])),
			change_24h	 = Decimal(str(item["P"])),
			timestamp_ms = timestamp_ms,
		)

	except (KeyError, TypeError, InvalidOperation) as e:

		raise ValueError(
			f"malformed ticker record for {item.get('s')}: {e!r}"
		) from e

#———————————————————————————————————————————————————————————————————————————————

class UpstreamIngestor:

	def __init__(self,
		ws_url:				 str,
		universe:			 InstrumentUniverse,
		store:				 LiveStateStore,
		broadcaster:		 Broadcaster,
		logger:				 logging.Logger,
		reconnect_delay_sec: float = 5.0,
		ws_ping_interval:	 Optional[int] = 20,
		ws_ping_timeout:	 Optional[int] = 20,
		reinit_on_open:		 str = REINIT_MISSING,
		connect:			 Callable[..., Any] = websockets.connect,
		sleep:				 Callable[[float], Awaitable[None]] = asyncio.sleep,
		clock_ms:			 Callable[[], int] = get_current_time_ms,
	):

		if reinit_on_open not in (REINIT_ALL, REINIT_MISSING):

			raise ValueError(
				f"reinit_on_open must be '{REINIT_ALL}' "
				f"or '{REINIT_MISSING}', got {reinit_on_open!r}"
			)

		self.ws_url				 = ws_url
		self.universe			 = universe
		self.store				 = store
		self.broadcaster		 = broadcaster
		self.logger				 = logger
		self.reconnect_delay_sec = reconnect_delay_sec
		self.ws_ping_interval	 = ws_ping_interval
		self.ws_ping_timeout	 = ws_ping_timeout
		self.reinit_on_open		 = reinit_on_open

		self._connect  = connect
		self._sleep	   = sleep
		self._clock_ms = clock_ms

		self.state			 = IngestState.DISCONNECTED
		self.connect_count	 = 0
		self.message_count	 = 0
		self.dropped_batches = 0
		self.last_message_ms: Optional[int] = None

	#———————————————————————————————————————————————————————————————————————————

	def _transition(self, new_state: IngestState) -> None:

		if new_state is not self.state:

			self.logger.debug(
				f"[{my_name()}] {self.state.value} → {new_state.value}"
			)
			self.state = new_state

	#———————————————————————————————————————————————————————————————————————————

	def on_open(self) -> None:

		written = self.store.init_sentinels(
			only_missing = (self.reinit_on_open == REINIT_MISSING),
			timestamp_ms = self._clock_ms(),
		)

		self.logger.info(
			f"[{my_name()}]🟢 upstream connected "
			f"(#{self.connect_count}, {written} sentinel(s))"
		)

	#———————————————————————————————————————————————————————————————————————————

	def parse_batch(self, raw: Any) -> Optional[list[LiveTick]]:

		"""
		Returns the filtered, normalized batch, or None when the message
		cannot be parsed as an array of records (the batch is dropped).
		"""

		try:

			parsed = orjson.loads(raw)

		except (orjson.JSONDecodeError, TypeError) as e:

			self.dropped_batches += 1
			self.logger.warning(
				f"[{my_name()}] unparsable upstream message "
				f"dropped: {e}"
			)
			return None

		if not isinstance(parsed, list):

			self.dropped_batches += 1
			self.logger.warning(
				f"[{my_name()}] upstream message is not an array "
				f"({type(parsed).__name__}); dropped"
			)
			return None

		receipt_ms = self._clock_ms()
		batch: list[LiveTick] = []

		for item in filter_records(parsed, self.universe):

			try:

				batch.append(
					normalize_record(item, receipt_ms)
				)

			except ValueError as e:

				self.logger.warning(f"[{my_name()}] {e}")

		return batch

	#———————————————————————————————————————————————————————————————————————————

	async def handle_message(self, raw: Any) -> Optional[list[LiveTick]]:

		batch = self.parse_batch(raw)

		if batch is None: return None

		self.message_count += 1
		self.last_message_ms = self._clock_ms()

		for tick in batch:

			self.store.set(tick.symbol, tick)

		# empty batches are forwarded too: subscribers observe liveness

		try:

			await self.broadcaster.publish(batch)

		except asyncio.CancelledError:

			raise

		except Exception as e:

			self.logger.error(
				f"[{my_name()}] publish failed: {e}",
				exc_info=True
			)

		return batch

	#———————————————————————————————————————————————————————————————————————————

	@ensure_logging_on_exception
	async def run(
		self,
		shutdown_event: Optional[asyncio.Event] = None,
	) -> None:

		def is_shutting_down() -> bool:

			return (
				shutdown_event is not None
				and shutdown_event.is_set()
			)

		self.store.init_sentinels(
			only_missing = True,
			timestamp_ms = self._clock_ms(),
		)

		while not is_shutting_down():	# infinite standalone loop

			self._transition(IngestState.CONNECTING)

			try:

				async with self._connect(
					self.ws_url,
					ssl			  = (
						get_ssl_context()
						if self.ws_url.startswith("wss")
						else None
					),
					ping_interval = self.ws_ping_interval,
					ping_timeout  = self.ws_ping_timeout,
					compression	  = None,
				) as ws:

					self.connect_count += 1
					self._transition(IngestState.CONNECTED)
					self.on_open()

					async for raw in ws:

						if is_shutting_down(): break

						await self.handle_message(raw)

				if not is_shutting_down():

					self.logger.warning(
						f"[{my_name()}] upstream stream ended"
					)

			#———————————————————————————————————————————————————————————————————
			# On (Ctrl + C)
			#———————————————————————————————————————————————————————————————————

			except asyncio.CancelledError:

				self._transition(IngestState.DISCONNECTED)
				raise	# logging unnecessary

			#———————————————————————————————————————————————————————————————————
			# WebSocket Interrupted
			#———————————————————————————————————————————————————————————————————

			except websockets.exceptions.ConnectionClosed as e:

				self.logger.warning(
					f"[{my_name()}] upstream closed: "
					f"{e.rcvd.reason if e.rcvd else 'no close frame'}"
				)

			#———————————————————————————————————————————————————————————————————
			# WebSocket Failure
			#———————————————————————————————————————————————————————————————————

			except Exception as e:

				self.logger.warning(
					f"[{my_name()}] upstream error: {e}",
					exc_info=True
				)

			self._transition(IngestState.DISCONNECTED)

			if is_shutting_down(): break

			self.logger.warning(
				f"[{my_name()}] reconnecting in "
				f"{self.reconnect_delay_sec:.1f} seconds..."
			)

			await self._sleep(self.reconnect_delay_sec)

		self._transition(IngestState.DISCONNECTED)

		self.logger.info(
			f"[{my_name()}]📴 ingestor stopped"
		)
