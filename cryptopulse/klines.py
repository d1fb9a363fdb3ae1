# klines.py

#———————————————————————————————————————————————————————————————————————————————
# Historical candles
#
#	KlinesPassthrough:	relay → https://api.binance.com/api/v3/klines
#	RelayKlinesClient:	viewer → relay /api/klines
#
# Single attempt per request; no cache and no retry. Candle tuples are
# relayed verbatim; only slot 0 (open time, ms) and slot 4 (close) are read
# downstream.
#———————————————————————————————————————————————————————————————————————————————

import logging
import aiohttp
from typing import Any, Optional, Union

from cryptopulse.util import my_name, get_ssl_context

#———————————————————————————————————————————————————————————————————————————————

KLINE_OPEN_TIME_SLOT = 0
KLINE_CLOSE_SLOT	 = 4

DEFAULT_INTERVAL = "1h"
DEFAULT_LIMIT	 = 24

#———————————————————————————————————————————————————————————————————————————————

class InvalidSymbolError(ValueError):
	pass

class UpstreamError(RuntimeError):
	pass

#———————————————————————————————————————————————————————————————————————————————

async def _get_json(
	url:		 str,
	params:		 dict[str, Any],
	timeout_sec: float,
) -> Any:

	async with aiohttp.ClientSession(
		timeout = aiohttp.ClientTimeout(total = timeout_sec)
	) as s:

		async with s.get(
			url,
			params = params,
			ssl = (
				get_ssl_context()
				if url.startswith("https")
				else True
			),
		) as r:

			r.raise_for_status()
			return await r.json(content_type = None)

#———————————————————————————————————————————————————————————————————————————————

class KlinesPassthrough:

	def __init__(self,
		rest_url:	  str,
		quote_suffix: str,
		logger:		  logging.Logger,
		timeout_sec:  float = 10.0,
	):

		self.rest_url	  = rest_url
		self.quote_suffix = quote_suffix.upper()
		self.logger		  = logger
		self.timeout_sec  = timeout_sec

	#———————————————————————————————————————————————————————————————————————————

	def validate_symbol(self, symbol: Optional[str]) -> str:

		if (
			not symbol
			or not symbol.upper().endswith(self.quote_suffix)
		):
			raise InvalidSymbolError(
				f"invalid symbol format: {symbol!r}"
			)

		return symbol.upper()

	#———————————————————————————————————————————————————————————————————————————

	async def fetch(
		self,
		symbol:	  Optional[str],
		interval: str = DEFAULT_INTERVAL,
		limit:	  Union[int, str] = DEFAULT_LIMIT,
	) -> Any:

		symbol = self.validate_symbol(symbol)

		try:

			return await _get_json(
				self.rest_url,
				{
					"symbol":	symbol,
					"interval": interval,
					"limit":	limit,
				},
				self.timeout_sec,
			)

		except Exception as e:

			self.logger.error(
				f"[{my_name()}] Binance API error "
				f"({symbol} {interval} x{limit}): {e}"
			)
			raise UpstreamError(str(e)) from e

#———————————————————————————————————————————————————————————————————————————————

class RelayKlinesClient:

	def __init__(self,
		relay_http_url: str,
		logger:			logging.Logger,
		timeout_sec:	float = 10.0,
	):

		self.url		 = relay_http_url.rstrip("/") + "/api/klines"
		self.logger		 = logger
		self.timeout_sec = timeout_sec

	async def fetch(
		self,
		symbol:	  str,
		interval: str = DEFAULT_INTERVAL,
		limit:	  int = DEFAULT_LIMIT,
	) -> list[list[Any]]:

		try:

			raw = await _get_json(
				self.url,
				{
					"symbol":	symbol.upper(),
					"interval": interval,
					"limit":	limit,
				},
				self.timeout_sec,
			)

		except Exception as e:

			raise UpstreamError(
				f"history fetch for {symbol} failed: {e}"
			) from e

		if not isinstance(raw, list):

			raise UpstreamError(
				f"unexpected klines payload for {symbol}: "
				f"{type(raw).__name__}"
			)

		return raw
