# init.py

#———————————————————————————————————————————————————————————————————————————————
# app.conf → typed settings for stream_relay.py and live_client.py
#
#	KEY = value		# trailing comments allowed
#
# Unknown keys are ignored; missing keys fall back to the defaults below.
#———————————————————————————————————————————————————————————————————————————————

import logging, asyncio
from collections import OrderedDict
from typing import Iterator, Optional

from cryptopulse.universe import InstrumentUniverse
from cryptopulse.util import (
	my_name,
	resource_path,
)

#———————————————————————————————————————————————————————————————————————————————

def setup_uvloop(logger: logging.Logger) -> str:

	"""
	Install uvloop's policy when it can be imported.
	Returns the name of the loop implementation in effect.
	"""

	try:

		import uvloop

	except ImportError:

		logger.warning(
			f"[{my_name()}] uvloop not available - "
			f"relay runs on the default asyncio loop."
		)
		return "asyncio"

	asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
	logger.info(f"[{my_name()}]⚡ uvloop")

	return "uvloop"

#———————————————————————————————————————————————————————————————————————————————

def iter_conf_pairs(lines: Iterator[str]) -> Iterator[tuple[str, str]]:

	for raw in lines:

		line = raw.split("#", 1)[0].strip()

		key, sep, val = line.partition("=")

		if not sep or not key.strip(): continue

		yield key.strip(), val.strip()

def read_conf(
	config_path: str,
	logger:		 logging.Logger = None,
) -> dict[str, str]:

	with open(
		resource_path(config_path, logger),
		'r', encoding='utf-8'
	) as f:

		# later lines override earlier ones
		return dict(iter_conf_pairs(f))

#———————————————————————————————————————————————————————————————————————————————

def extract_comma_delimited(
	config: dict[str, str],
	key:	str,
	upper:	bool = True,
) -> list[str]:

	val_str = config.get(key)

	if not isinstance(val_str, str):

		raise ValueError(
			f"[{my_name()}] {key} field "
			f"missing or not a string."
		)

	return list(
		# the input order is preserved
		OrderedDict.fromkeys(
			(s.strip().upper() if upper else s.strip())
			for s in val_str.split(",")
			if s.strip()
		)
	)

#———————————————————————————————————————————————————————————————————————————————

def extract_optional_sec(
	config: dict[str, str],
	key:	str,
) -> Optional[int]:

	value = int(config.get(key, "0"))

	return value if value > 0 else None

#———————————————————————————————————————————————————————————————————————————————

def extract_universe(
	config: dict[str, str],
	logger: logging.Logger,
) -> InstrumentUniverse:

	universe = InstrumentUniverse(
		extract_comma_delimited(config, "SYMBOLS"),
		quote_suffix	 = config.get("QUOTE_SUFFIX", "USDT"),
		leverage_markers = extract_comma_delimited(
			{"LEVERAGE_MARKERS": config.get("LEVERAGE_MARKERS", "UP,DOWN")},
			"LEVERAGE_MARKERS",
		),
		logger = logger,
	)

	if not len(universe):

		raise RuntimeError(
			f"No SYMBOLS loaded from config."
		)

	return universe

#———————————————————————————————————————————————————————————————————————————————

def load_relay_config(
	logger:		 logging.Logger,
	config_path: str = "app.conf",
) -> tuple[
	#
	InstrumentUniverse,	# universe
	#
	str,			# ws_url_ticker
	str,			# rest_url_klines
	float,			# reconnect_delay_sec
	Optional[int],	# ws_ping_interval
	Optional[int],	# ws_ping_timeout
	str,			# reinit_on_open
	#
	str,			# relay_host
	int,			# relay_port_number
	list[str],		# cors_origins
	float,			# send_timeout_sec
	int,			# max_relay_connections
	float,			# klines_timeout_sec
]:

	try:

		config = read_conf(config_path, logger)

		universe = extract_universe(config, logger)

		#———————————————————————————————————————————————————————————————————————
		# Upstream
		#———————————————————————————————————————————————————————————————————————

		ws_url_ticker = config.get(
			"WS_URL_TICKER",
			"wss://stream.binance.com:9443/ws/!ticker@arr",
		)
		rest_url_klines = config.get(
			"REST_URL_KLINES",
			"https://api.binance.com/api/v3/klines",
		)

		reconnect_delay_sec = float(config.get("RECONNECT_DELAY_SEC", "5"))
		if reconnect_delay_sec < 0:
			raise ValueError("RECONNECT_DELAY_SEC must be ≥ 0")

		ws_ping_interval = extract_optional_sec(config, "WS_PING_INTERVAL")
		ws_ping_timeout  = extract_optional_sec(config, "WS_PING_TIMEOUT")

		reinit_on_open = config.get("REINIT_ON_OPEN", "missing").lower()
		if reinit_on_open not in ("missing", "all"):
			raise ValueError("REINIT_ON_OPEN must be 'missing' or 'all'")

		#———————————————————————————————————————————————————————————————————————
		# Relay Endpoint
		#———————————————————————————————————————————————————————————————————————

		relay_host			  = config.get("RELAY_HOST", "0.0.0.0")
		relay_port_number	  = int(config.get("RELAY_PORT_NUMBER", "3001"))
		cors_origins		  = extract_comma_delimited(
			{"CORS_ORIGINS": config.get("CORS_ORIGINS", "http://localhost:3000")},
			"CORS_ORIGINS", upper = False,
		)
		send_timeout_sec	  = float(config.get("SEND_TIMEOUT_SEC", "2.0"))
		max_relay_connections = int(config.get("MAX_RELAY_CONNECTIONS", "256"))
		klines_timeout_sec	  = float(config.get("KLINES_TIMEOUT_SEC", "10"))

		return (
			universe,
			#
			ws_url_ticker,
			rest_url_klines,
			reconnect_delay_sec,
			ws_ping_interval,
			ws_ping_timeout,
			reinit_on_open,
			#
			relay_host,
			relay_port_number,
			cors_origins,
			send_timeout_sec,
			max_relay_connections,
			klines_timeout_sec,
		)

	except Exception as e:

		logger.critical(
			f"[{my_name()}] Failed to load config: "
			f"{e}", exc_info=True
		)
		raise SystemExit from e

#———————————————————————————————————————————————————————————————————————————————

def load_client_config(
	logger:		 logging.Logger,
	config_path: str = "app.conf",
) -> tuple[
	#
	InstrumentUniverse,	# universe
	#
	str,			# relay_ws_url
	str,			# relay_http_url
	float,			# reconnect_delay_sec
	#
	str,			# chart_interval
	int,			# chart_limit
	float,			# chart_refresh_sec
	#
	str,			# favorites_path
	str,			# report_dir
]:

	try:

		config = read_conf(config_path, logger)

		universe = extract_universe(config, logger)

		relay_ws_url		= config.get("RELAY_WS_URL", "ws://localhost:3001/")
		relay_http_url		= config.get("RELAY_HTTP_URL", "http://localhost:3001")
		reconnect_delay_sec = float(config.get("RECONNECT_DELAY_SEC", "5"))

		chart_interval	  = config.get("CHART_INTERVAL", "1m")
		chart_limit		  = int(config.get("CHART_LIMIT", "60"))
		chart_refresh_sec = float(config.get("CHART_REFRESH_SEC", "5"))
		if chart_limit <= 0:
			raise ValueError("CHART_LIMIT must be > 0")
		if chart_refresh_sec <= 0:
			raise ValueError("CHART_REFRESH_SEC must be > 0")

		favorites_path = config.get("FAVORITES_PATH", "favorites.json")
		report_dir	   = config.get("REPORT_DIR", ".")

		return (
			universe,
			#
			relay_ws_url,
			relay_http_url,
			reconnect_delay_sec,
			#
			chart_interval,
			chart_limit,
			chart_refresh_sec,
			#
			favorites_path,
			report_dir,
		)

	except Exception as e:

		logger.critical(
			f"[{my_name()}] Failed to load config: "
			f"{e}", exc_info=True
		)
		raise SystemExit from e
