# universe.py

#———————————————————————————————————————————————————————————————————————————————
# The fixed, ordered set of tracked instruments. Defines the filtering rule
# applied at every boundary and the default display order.
#———————————————————————————————————————————————————————————————————————————————

import logging
from collections import OrderedDict
from typing import Iterable, Optional

from cryptopulse.util import my_name

#———————————————————————————————————————————————————————————————————————————————

DEFAULT_SYMBOLS = (
	'BTCUSDT', 'ETHUSDT', 'BNBUSDT', 'SOLUSDT', 'XRPUSDT',
	'ADAUSDT', 'DOGEUSDT', 'AVAXUSDT', 'DOTUSDT', 'LINKUSDT',
)

DEFAULT_QUOTE_SUFFIX	 = "USDT"
DEFAULT_LEVERAGE_MARKERS = ("UP", "DOWN")

#———————————————————————————————————————————————————————————————————————————————

class InstrumentUniverse:

	"""
	Immutable, ordered list of instrument identifiers.

	An identifier is accepted only when it is a member, ends with the
	quote suffix and carries none of the leverage markers
	(e.g. `BTCUPUSDT`, `ETHDOWNUSDT`).
	"""

	def __init__(self,
		symbols:		  Iterable[str] = DEFAULT_SYMBOLS,
		quote_suffix:	  str = DEFAULT_QUOTE_SUFFIX,
		leverage_markers: Iterable[str] = DEFAULT_LEVERAGE_MARKERS,
		logger:			  Optional[logging.Logger] = None,
	):

		self.quote_suffix	  = quote_suffix.upper()
		self.leverage_markers = tuple(
			m.upper() for m in leverage_markers if m.strip()
		)

		accepted: list[str] = []

		# the input order is preserved

		for symbol in OrderedDict.fromkeys(
			s.strip().upper() for s in symbols if s.strip()
		):

			if self.is_spot_quote(symbol):

				accepted.append(symbol)

			elif logger is not None:

				logger.warning(
					f"[{my_name()}] {symbol} dropped: "
					f"not a {self.quote_suffix} spot pair"
				)

		self.symbols: tuple[str, ...] = tuple(accepted)
		self._index:  dict[str, int]  = {
			symbol: i for i, symbol in enumerate(self.symbols)
		}

	#———————————————————————————————————————————————————————————————————————————

	def __contains__(self, symbol: object) -> bool:

		return symbol in self._index

	def __iter__(self):

		return iter(self.symbols)

	def __len__(self) -> int:

		return len(self.symbols)

	def __repr__(self) -> str:

		return f"InstrumentUniverse({list(self.symbols)!r})"

	#———————————————————————————————————————————————————————————————————————————

	def has_quote_suffix(self, symbol: str) -> bool:

		return symbol.upper().endswith(self.quote_suffix)

	def is_spot_quote(self, symbol: str) -> bool:

		symbol = symbol.upper()

		return (
			self.has_quote_suffix(symbol)
			and not any(
				marker in symbol
				for marker in self.leverage_markers
			)
		)

	def accepts(self, symbol: object) -> bool:

		return (
			isinstance(symbol, str)
			and symbol in self._index
			and self.is_spot_quote(symbol)
		)

	def index_of(self, symbol: str) -> Optional[int]:

		return self._index.get(symbol)

	def base_asset(self, symbol: str) -> str:

		if symbol.endswith(self.quote_suffix):
			return symbol[: -len(self.quote_suffix)]

		return symbol
