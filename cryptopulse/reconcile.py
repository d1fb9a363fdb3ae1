# reconcile.py

#———————————————————————————————————————————————————————————————————————————————
# Client Reconciliation Engine
#
#	relay batch ──▶ apply_message() ──▶ rows (replaced per instrument)
#	                      │                └──▶ ordering (favorites first)
#	                      └──▶ HistoryBuffer.apply_live() (last point only)
#
#	select(symbol) ──▶ /api/klines ──▶ HistoryBuffer (fresh; change-from-open)
#	claim_history() ──▶ rows first displayed (or retry due) without a buffer
#	run_refresh()  ──▶ refresh() every CHART_REFRESH_SEC
#
# History buffers never grow after a fetch: a live tick or a refresh only
# replaces the final point.
#———————————————————————————————————————————————————————————————————————————————

import asyncio, logging, math, orjson
from dataclasses import dataclass
from datetime import tzinfo
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional, Protocol

from cryptopulse.favorites import FavoriteStore
from cryptopulse.klines import (
	KLINE_OPEN_TIME_SLOT,
	KLINE_CLOSE_SLOT,
	UpstreamError,
)
from cryptopulse.report import write_report
from cryptopulse.universe import InstrumentUniverse
from cryptopulse.util import (
	my_name,
	get_current_time_ms,
	ms_to_datetime,
)

#———————————————————————————————————————————————————————————————————————————————

ZERO = Decimal(0)
ONE	 = Decimal(1)

UP	 = "up"
DOWN = "down"

#———————————————————————————————————————————————————————————————————————————————
# Derived Fields
#———————————————————————————————————————————————————————————————————————————————

def format_price(price: Decimal) -> str:

	"""
	USD currency style: $67,012.35 / $0.4821
	"""

	digits = 4 if price < ONE else 2
	quantized = price.quantize(
		ONE.scaleb(-digits), rounding=ROUND_HALF_UP
	)

	if quantized < 0:
		return f"-${-quantized:,.{digits}f}"

	return f"${quantized:,.{digits}f}"

def format_change(change: Decimal) -> str:

	return f"{change.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):.2f}%"

def direction(change: Decimal) -> str:

	return UP if change >= ZERO else DOWN

#———————————————————————————————————————————————————————————————————————————————

def format_label(
	open_time_ms: int,
	interval:	  str,
	tz:			  Optional[tzinfo] = None,
) -> str:

	dt = ms_to_datetime(open_time_ms).astimezone(tz)

	if interval.endswith(("d", "w", "M")):
		return dt.strftime("%m-%d")

	if interval.endswith("h"):
		return dt.strftime("%H:00")

	return dt.strftime("%H:%M")

#———————————————————————————————————————————————————————————————————————————————

@dataclass(frozen=True)
class DerivedRow:

	symbol:		 str
	price:		 Decimal
	change_24h:	 Decimal
	price_text:	 str
	change_text: str
	direction:	 str

	@classmethod
	def from_wire(cls, record: Any) -> "DerivedRow":

		try:

			symbol = record["s"].upper()
			price  = Decimal(str(record["c"]))
			change = Decimal(str(record["P"]))

		except (KeyError, TypeError, AttributeError, InvalidOperation) as e:

			raise ValueError(f"malformed relay record {record!r}: {e!r}") from e

		if not (price.is_finite() and change.is_finite()):

			raise ValueError(f"non-finite values in relay record {record!r}")

		return cls(
			symbol		= symbol,
			price		= price,
			change_24h	= change,
			price_text	= format_price(price),
			change_text = format_change(change),
			direction	= direction(change),
		)

#———————————————————————————————————————————————————————————————————————————————
# History Buffer
#———————————————————————————————————————————————————————————————————————————————

@dataclass(frozen=True)
class HistoryPoint:

	label: str
	price: Decimal

class HistoryBuffer:

	def __init__(self,
		symbol:	 str,
		points:	 list[HistoryPoint],
	):

		self.symbol = symbol
		self._points: list[HistoryPoint] = list(points)

		# fixed at fetch time; live ticks do not move it
		self.change_from_open: Decimal = self._change_from_open()

	#———————————————————————————————————————————————————————————————————————————

	@classmethod
	def from_candles(
		cls,
		symbol:	  str,
		candles:  list[list[Any]],
		interval: str,
		limit:	  int,
		tz:		  Optional[tzinfo] = None,
	) -> "HistoryBuffer":

		try:

			points = [
				HistoryPoint(
					label = format_label(
						int(c[KLINE_OPEN_TIME_SLOT]), interval, tz
					),
					price = Decimal(str(c[KLINE_CLOSE_SLOT])),
				)
				for c in candles[-limit:]
			]

		except (
			IndexError, KeyError, TypeError, ValueError,
			InvalidOperation, OverflowError, OSError,
		) as e:

			raise UpstreamError(
				f"malformed candles for {symbol}: {e!r}"
			) from e

		if not points:

			raise UpstreamError(f"no candles for {symbol}")

		return cls(symbol, points)

	#———————————————————————————————————————————————————————————————————————————

	def _change_from_open(self) -> Decimal:

		first = self._points[0].price
		last  = self._points[-1].price

		if first == ZERO: return ZERO

		return (last - first) / first * 100

	#———————————————————————————————————————————————————————————————————————————

	def __len__(self) -> int:

		return len(self._points)

	@property
	def points(self) -> list[HistoryPoint]:

		return list(self._points)

	@property
	def last(self) -> HistoryPoint:

		return self._points[-1]

	#———————————————————————————————————————————————————————————————————————————

	def apply_live(self, price: Decimal, label: str) -> bool:

		"""
		Replace the final point when the live price differs from it.
		"""

		if self.last.price == price: return False

		self._points[-1] = HistoryPoint(label, price)
		return True

	def restamp(self, price: Decimal, label: str) -> None:

		self._points[-1] = HistoryPoint(label, price)

#———————————————————————————————————————————————————————————————————————————————
# Engine
#———————————————————————————————————————————————————————————————————————————————

class HistoryFetcher(Protocol):

	async def fetch(
		self, symbol: str, interval: str, limit: int
	) -> list[list[Any]]: ...

class ReconciliationEngine:

	def __init__(self,
		universe:  InstrumentUniverse,
		favorites: FavoriteStore,
		fetcher:   HistoryFetcher,
		logger:	   logging.Logger,
		interval:  str = "1m",
		limit:	   int = 60,
		tz:		   Optional[tzinfo] = None,
		retry_sec: float = 30.0,
		clock_ms = get_current_time_ms,
	):

		self.universe  = universe
		self.favorites = favorites
		self.fetcher   = fetcher
		self.logger	   = logger
		self.interval  = interval
		self.limit	   = limit
		self.tz		   = tz
		self.retry_sec = retry_sec

		self._clock_ms = clock_ms

		self._rows: dict[str, DerivedRow] = {}
		self._ordered: list[DerivedRow] = []
		self._live_prices: dict[str, Decimal] = {}
		self._buffers: dict[str, HistoryBuffer] = {}
		self._in_flight: set[str] = set()
		self._failed_ms: dict[str, int] = {}

		self.last_update_ms: Optional[int] = None

	#———————————————————————————————————————————————————————————————————————————
	# Live Rows
	#———————————————————————————————————————————————————————————————————————————

	def apply_message(self, raw: Any) -> int:

		"""
		Merge one relay message (snapshot or batch). Returns the number of
		rows replaced; a message that is not an array changes nothing.
		"""

		if isinstance(raw, (str, bytes, bytearray, memoryview)):

			try:

				raw = orjson.loads(raw)

			except orjson.JSONDecodeError as e:

				self.logger.warning(
					f"[{my_name()}] unparsable relay message: {e}"
				)
				return 0

		if not isinstance(raw, list):

			self.logger.warning(
				f"[{my_name()}] relay message is not an array "
				f"({type(raw).__name__}); ignored"
			)
			return 0

		now_ms = self._clock_ms()
		label  = format_label(now_ms, self.interval, self.tz)
		replaced = 0

		for record in raw:

			try:

				row = DerivedRow.from_wire(record)

			except ValueError as e:

				self.logger.warning(f"[{my_name()}] {e}")
				continue

			self._rows[row.symbol] = row
			replaced += 1

			# a zero price is the relay's placeholder, not a trade
			if row.price == ZERO: continue

			self._live_prices[row.symbol] = row.price

			buffer = self._buffers.get(row.symbol)

			if buffer is not None:

				buffer.apply_live(row.price, label)

		self._reorder()
		self.last_update_ms = now_ms

		return replaced

	#———————————————————————————————————————————————————————————————————————————

	def _sort_key(self, row: DerivedRow) -> tuple[bool, float]:

		index = self.universe.index_of(row.symbol)

		return (
			row.symbol not in self.favorites,
			math.inf if index is None else index,
		)

	def _reorder(self) -> None:

		# sorted() is stable: ties keep first-seen order
		self._ordered = sorted(self._rows.values(), key=self._sort_key)

	def rows(self) -> list[DerivedRow]:

		return list(self._ordered)

	def row(self, symbol: str) -> Optional[DerivedRow]:

		return self._rows.get(symbol.upper())

	def is_favorite(self, symbol: str) -> bool:

		return symbol.upper() in self.favorites

	#———————————————————————————————————————————————————————————————————————————

	def toggle_favorite(self, symbol: str) -> bool:

		now_favorite = self.favorites.toggle(symbol)
		self._reorder()

		self.logger.info(
			f"[{my_name()}]⭐ {symbol.upper()} "
			f"{'added' if now_favorite else 'removed'}"
		)

		return now_favorite

	#———————————————————————————————————————————————————————————————————————————
	# History
	#———————————————————————————————————————————————————————————————————————————

	def history(self, symbol: str) -> Optional[HistoryBuffer]:

		return self._buffers.get(symbol.upper())

	async def select(self, symbol: str) -> Optional[HistoryBuffer]:

		"""
		Fetch a fresh candle series for `symbol` and replace its buffer.
		On failure every buffer is left as it was and None is returned.
		"""

		symbol = symbol.upper()
		self._in_flight.add(symbol)

		try:

			candles = await self.fetcher.fetch(
				symbol, self.interval, self.limit
			)
			buffer = HistoryBuffer.from_candles(
				symbol, candles, self.interval, self.limit, self.tz
			)

		except asyncio.CancelledError:

			raise

		except Exception as e:

			self._failed_ms[symbol] = self._clock_ms()

			self.logger.error(
				f"[{my_name()}] history for {symbol} "
				f"unavailable: {e}"
			)
			return None

		finally:

			self._in_flight.discard(symbol)

		self._failed_ms.pop(symbol, None)
		self._buffers[symbol] = buffer

		self.logger.info(
			f"[{my_name()}]📈 {symbol} {len(buffer)} point(s), "
			f"{format_change(buffer.change_from_open)} from open"
		)

		return buffer

	def claim_history(self, now_ms: Optional[int] = None) -> list[str]:

		"""
		Displayed Universe rows that still need a history fetch, marked as
		in flight so a later message does not claim them again. A symbol
		whose last fetch failed is offered again after `retry_sec`.
		"""

		now_ms = self._clock_ms() if now_ms is None else now_ms
		claimed = []

		for row in self._ordered:

			symbol = row.symbol

			if (
				symbol in self._buffers
				or symbol in self._in_flight
				or not self.universe.accepts(symbol)
			):
				continue

			failed_ms = self._failed_ms.get(symbol)

			if (
				failed_ms is not None
				and now_ms - failed_ms < self.retry_sec * 1000
			):
				continue

			self._in_flight.add(symbol)
			claimed.append(symbol)

		return claimed

	#———————————————————————————————————————————————————————————————————————————

	def refresh(self, now_ms: Optional[int] = None) -> int:

		"""
		Re-stamp the final point of every buffer with the last known live
		price and the current time. Buffers with no live price yet are left
		as fetched. Returns the number of buffers touched.
		"""

		now_ms = self._clock_ms() if now_ms is None else now_ms
		label  = format_label(now_ms, self.interval, self.tz)
		touched = 0

		for symbol, buffer in self._buffers.items():

			price = self._live_prices.get(symbol)

			if price is None: continue

			buffer.restamp(price, label)
			touched += 1

		return touched

	async def run_refresh(self, interval_sec: float) -> None:

		while True:

			await asyncio.sleep(interval_sec)
			self.refresh()

	#———————————————————————————————————————————————————————————————————————————
	# Report
	#———————————————————————————————————————————————————————————————————————————

	def export_report(self, report_dir: str, day=None) -> str:

		return write_report(
			self.rows(),
			self.favorites,
			report_dir,
			self.logger,
			quote_suffix = self.universe.quote_suffix,
			day			 = day,
		)
