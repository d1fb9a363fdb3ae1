# stream_relay.py

r"""————————————————————————————————————————————————————————————————————————————

Binance spot ticker relay:

	wss://stream.binance.com:9443/ws/!ticker@arr
		→ UpstreamIngestor
		→ LiveStateStore + Broadcaster
		→ ws://{RELAY_HOST}:{RELAY_PORT_NUMBER}/

	GET http://{RELAY_HOST}:{RELAY_PORT_NUMBER}/api/klines?symbol=BTCUSDT

————————————————————————————————————————————————————————————————————————————————

How to Run:

	python -m cryptopulse.stream_relay [path/to/app.conf]

—————————————————————————————————————————————————————————————————————————————"""

import sys, asyncio

from cryptopulse.util import (
	my_name,
	set_global_logger,
	force_print_exception,
)
from cryptopulse.init import (
	setup_uvloop,
	load_relay_config,
)
from cryptopulse.state import LiveStateStore
from cryptopulse.broadcast import Broadcaster
from cryptopulse.core import UpstreamIngestor
from cryptopulse.klines import KlinesPassthrough
from cryptopulse.relay_server import create_relay_server
from cryptopulse.shutdown import create_shutdown_manager

#———————————————————————————————————————————————————————————————————————————————

def run(config_path: str = "app.conf") -> None:

	from uvicorn.config import Config
	from uvicorn.server import Server

	logger, queue_listener = set_global_logger("stream_relay.log")

	setup_uvloop(logger)

	(
		UNIVERSE,
		#
		WS_URL_TICKER,
		REST_URL_KLINES,
		RECONNECT_DELAY_SEC,
		WS_PING_INTERVAL,
		WS_PING_TIMEOUT,
		REINIT_ON_OPEN,
		#
		RELAY_HOST,
		RELAY_PORT_NUMBER,
		CORS_ORIGINS,
		SEND_TIMEOUT_SEC,
		MAX_RELAY_CONNECTIONS,
		KLINES_TIMEOUT_SEC,
	) = load_relay_config(logger, config_path)

	#———————————————————————————————————————————————————————————————————————————
	# SHUTDOWN MANAGER SETUP
	#———————————————————————————————————————————————————————————————————————————

	(
		SHUTDOWN_MANAGER,
		MAIN_SHUTDOWN_EVENT,
	) = create_shutdown_manager(logger)

	SHUTDOWN_MANAGER.register_signal_handlers()

	#———————————————————————————————————————————————————————————————————————————

	async def main():

		try:

			store		= LiveStateStore(UNIVERSE)
			broadcaster = Broadcaster(store, logger, SEND_TIMEOUT_SEC)

			ingestor = UpstreamIngestor(
				WS_URL_TICKER,
				UNIVERSE,
				store,
				broadcaster,
				logger,
				reconnect_delay_sec = RECONNECT_DELAY_SEC,
				ws_ping_interval	= WS_PING_INTERVAL,
				ws_ping_timeout		= WS_PING_TIMEOUT,
				reinit_on_open		= REINIT_ON_OPEN,
			)

			klines = KlinesPassthrough(
				REST_URL_KLINES,
				UNIVERSE.quote_suffix,
				logger,
				timeout_sec = KLINES_TIMEOUT_SEC,
			)

			relay_server = create_relay_server(
				store			 = store,
				broadcaster		 = broadcaster,
				klines			 = klines,
				config			 = {
					'CORS_ORIGINS':			 CORS_ORIGINS,
					'MAX_RELAY_CONNECTIONS': MAX_RELAY_CONNECTIONS,
				},
				shutdown_manager = SHUTDOWN_MANAGER,
				logger			 = logger,
				ingestor		 = ingestor,
			)

			#———————————————————————————————————————————————————————————————————
			# Launch Asynchronous Coroutines
			#———————————————————————————————————————————————————————————————————

			ingest_task = asyncio.create_task(
				ingestor.run(MAIN_SHUTDOWN_EVENT)
			)
			SHUTDOWN_MANAGER.register_task("ingestor", ingest_task)

			#———————————————————————————————————————————————————————————————————
			# FastAPI
			#———————————————————————————————————————————————————————————————————

			try:

				cfg = Config(
					app					   = relay_server.app,
					host				   = RELAY_HOST,
					port				   = RELAY_PORT_NUMBER,
					lifespan			   = "on",
					use_colors			   = True,
					log_level			   = "warning",
					workers				   = 1,
					loop				   = "asyncio",
					ws_per_message_deflate = False,
				)

				server = Server(cfg)
				logger.info(
					f"[{my_name()}]🚀 fastapi starts → "
					f"ws://localhost:{RELAY_PORT_NUMBER}/"
				)
				await server.serve()
				logger.info(
					f"[{my_name()}]⚓ fastapi ends"
				)

			except Exception as e:

				logger.critical(
					f"[{my_name()}] fastapi "
					f"failed to start: {e}",
					exc_info=True
				)
				raise SystemExit from e

			finally:

				MAIN_SHUTDOWN_EVENT.set()
				ingest_task.cancel()

				try: await ingest_task
				except asyncio.CancelledError: pass

		#———————————————————————————————————————————————————————————————————————

		except Exception as e:

			logger.critical(
				f"[{my_name()}] "
				f"unhandled exception: {e}",
				exc_info=True
			)
			raise SystemExit from e

	#———————————————————————————————————————————————————————————————————————————

	try: asyncio.run(main())

	except KeyboardInterrupt:

		logger.info(
			f"[{my_name()}] application terminated "
			f"by user (Ctrl + C)."
		)

	finally:

		if not SHUTDOWN_MANAGER.is_shutdown_complete():

			SHUTDOWN_MANAGER.graceful_shutdown()

		SHUTDOWN_MANAGER.final_message()

		try: queue_listener.stop()
		except Exception as e:
			force_print_exception(my_name(), e)

#———————————————————————————————————————————————————————————————————————————————

def main() -> None:

	run(sys.argv[1] if len(sys.argv) > 1 else "app.conf")

if __name__ == "__main__":

	main()

#———————————————————————————————————————————————————————————————————————————————
