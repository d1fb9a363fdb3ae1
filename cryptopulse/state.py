# state.py

#———————————————————————————————————————————————————————————————————————————————
# Live State Store: latest known tick per instrument.
#
#	single writer:	UpstreamIngestor (set, init_sentinels)
#	many readers:	Broadcaster (snapshot), /api/status
#
# Every tick is an immutable object swapped in with one assignment under the
# lock, so readers never observe a half-written entry.
#———————————————————————————————————————————————————————————————————————————————

import threading
from dataclasses import dataclass
from decimal import Decimal

from cryptopulse.universe import InstrumentUniverse
from cryptopulse.util import get_current_time_ms

#———————————————————————————————————————————————————————————————————————————————

ZERO = Decimal(0)

@dataclass(frozen=True)
class LiveTick:

	symbol:		  str
	price:		  Decimal
	change_24h:	  Decimal
	timestamp_ms: int
	is_sentinel:  bool = False

	@classmethod
	def sentinel(cls, symbol: str, timestamp_ms: int) -> "LiveTick":

		return cls(symbol, ZERO, ZERO, timestamp_ms, is_sentinel=True)

	def to_wire(self) -> dict[str, str]:

		"""
		{instrument-code, price-as-string, percent-change-as-string},
		keyed the way the upstream ticker stream names them.
		"""

		return {
			"s": self.symbol,
			"c": str(self.price),
			"P": str(self.change_24h),
		}

#———————————————————————————————————————————————————————————————————————————————

class LiveStateStore:

	def __init__(self, universe: InstrumentUniverse):

		self.universe = universe
		self._lock	  = threading.Lock()
		self._ticks:  dict[str, LiveTick] = {}

	#———————————————————————————————————————————————————————————————————————————

	def init_sentinels(
		self,
		only_missing: bool = True,
		timestamp_ms: int  = None,
	) -> int:

		"""
		Put a sentinel tick for Universe instruments. With `only_missing`,
		instruments that already hold a real tick keep it.
		Returns the number of entries written.
		"""

		ts = (
			get_current_time_ms()
			if timestamp_ms is None
			else timestamp_ms
		)
		written = 0

		with self._lock:

			for symbol in self.universe:

				current = self._ticks.get(symbol)

				if (
					only_missing
					and current is not None
					and not current.is_sentinel
				):
					continue

				self._ticks[symbol] = LiveTick.sentinel(symbol, ts)
				written += 1

		return written

	#———————————————————————————————————————————————————————————————————————————

	def set(self, symbol: str, tick: LiveTick) -> None:

		if symbol not in self.universe:

			raise ValueError(
				f"{symbol} is not in the instrument universe"
			)

		if tick.symbol != symbol:

			raise ValueError(
				f"tick for {tick.symbol} stored under {symbol}"
			)

		with self._lock:

			self._ticks[symbol] = tick

	#———————————————————————————————————————————————————————————————————————————

	def get(self, symbol: str) -> LiveTick:

		with self._lock:

			tick = self._ticks.get(symbol)

		if tick is None:

			return LiveTick.sentinel(symbol, get_current_time_ms())

		return tick

	#———————————————————————————————————————————————————————————————————————————

	def get_all(self) -> list[tuple[str, LiveTick]]:

		with self._lock:

			ticks = dict(self._ticks)

		return [
			(symbol, ticks[symbol])
			for symbol in self.universe
			if symbol in ticks
		]

	#———————————————————————————————————————————————————————————————————————————

	def populated_count(self) -> int:

		with self._lock:

			return sum(
				1 for tick in self._ticks.values()
				if not tick.is_sentinel
			)
