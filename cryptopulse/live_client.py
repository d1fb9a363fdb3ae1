# live_client.py

r"""————————————————————————————————————————————————————————————————————————————

Terminal viewer for the relay:

	ws://localhost:3001/		→ ReconciliationEngine → rows
	http://localhost:3001/api/klines	→ history buffers (first display, --chart)

————————————————————————————————————————————————————————————————————————————————

How to Run:

	python -m cryptopulse.live_client [app.conf] [--chart BTCUSDT]
	python -m cryptopulse.live_client --toggle SOLUSDT
	python -m cryptopulse.live_client --report

—————————————————————————————————————————————————————————————————————————————"""

import asyncio, argparse, logging
import websockets
from typing import Any, Callable, Optional

from cryptopulse.favorites import FavoriteStore
from cryptopulse.init import setup_uvloop, load_client_config
from cryptopulse.klines import RelayKlinesClient
from cryptopulse.reconcile import (
	ReconciliationEngine,
	format_change,
	UP,
)
from cryptopulse.shutdown import create_shutdown_manager
from cryptopulse.util import (
	my_name,
	set_global_logger,
	force_print_exception,
	ms_to_datetime,
	CMAP4TXT,
	RESET4TXT,
)

#———————————————————————————————————————————————————————————————————————————————

class LiveClient:

	"""
	One viewer session: a relay subscription with fixed-delay reconnect,
	the chart refresh task and a history fetch for every instrument on its
	first display. All of them are bound to `run()`.
	"""

	def __init__(self,
		ws_url:				 str,
		engine:				 ReconciliationEngine,
		logger:				 logging.Logger,
		reconnect_delay_sec: float = 5.0,
		refresh_sec:		 float = 5.0,
		on_update:			 Optional[Callable[["LiveClient"], None]] = None,
		fetch_history:		 bool = True,
		connect:			 Callable[..., Any] = websockets.connect,
		sleep:				 Callable = asyncio.sleep,
	):

		self.ws_url				 = ws_url
		self.engine				 = engine
		self.logger				 = logger
		self.reconnect_delay_sec = reconnect_delay_sec
		self.refresh_sec		 = refresh_sec
		self.on_update			 = on_update
		self.fetch_history		 = fetch_history

		self._connect = connect
		self._sleep	  = sleep

		self.connected	   = False
		self.connect_count = 0

	#———————————————————————————————————————————————————————————————————————————

	async def run(
		self,
		shutdown_event: Optional[asyncio.Event] = None,
	) -> None:

		def is_shutting_down() -> bool:

			return (
				shutdown_event is not None
				and shutdown_event.is_set()
			)

		refresh_task = asyncio.create_task(
			self.engine.run_refresh(self.refresh_sec)
		)

		history_tasks: set[asyncio.Task] = set()

		async def fetch_history(symbol: str) -> None:

			if (
				await self.engine.select(symbol) is not None
				and self.on_update
			):
				self.on_update(self)

		def schedule_history() -> None:

			if not self.fetch_history: return

			for symbol in self.engine.claim_history():

				task = asyncio.create_task(fetch_history(symbol))
				history_tasks.add(task)
				task.add_done_callback(history_tasks.discard)

		try:

			while not is_shutting_down():

				try:

					async with self._connect(self.ws_url) as ws:

						self.connected = True
						self.connect_count += 1

						self.logger.info(
							f"[{my_name()}]🟢 relay connected "
							f"(#{self.connect_count})"
						)

						async for raw in ws:

							self.engine.apply_message(raw)
							schedule_history()

							if self.on_update: self.on_update(self)

							if is_shutting_down(): break

				except asyncio.CancelledError:

					raise

				except websockets.exceptions.ConnectionClosed as e:

					self.logger.warning(
						f"[{my_name()}] relay closed: "
						f"{e.rcvd.reason if e.rcvd else 'no close frame'}"
					)

				except Exception as e:

					self.logger.warning(
						f"[{my_name()}] relay error: {e}"
					)

				finally:

					self.connected = False

				if is_shutting_down(): break

				if self.on_update: self.on_update(self)

				self.logger.warning(
					f"[{my_name()}] reconnecting in "
					f"{self.reconnect_delay_sec:.1f} seconds..."
				)

				await self._sleep(self.reconnect_delay_sec)

		finally:

			pending = [refresh_task, *history_tasks]

			for task in pending: task.cancel()

			await asyncio.gather(*pending, return_exceptions=True)

			self.logger.info(f"[{my_name()}]📴 session ends")

#———————————————————————————————————————————————————————————————————————————————
# Terminal Rendering
#———————————————————————————————————————————————————————————————————————————————

def render(client: LiveClient) -> str:

	engine = client.engine

	indicator = (
		f"{CMAP4TXT['INFO']}● connected{RESET4TXT}"
		if client.connected
		else f"{CMAP4TXT['ERROR']}○ disconnected{RESET4TXT}"
	)

	last_update = (
		ms_to_datetime(engine.last_update_ms)
		.astimezone(engine.tz)
		.strftime("%H:%M:%S")
		if engine.last_update_ms else "--:--:--"
	)

	lines = [f"{indicator}  last update {last_update}"]

	for row in engine.rows():

		color = CMAP4TXT['INFO'] if row.direction == UP else CMAP4TXT['ERROR']
		star  = "★" if engine.is_favorite(row.symbol) else " "

		lines.append(
			f"{star} {engine.universe.base_asset(row.symbol):<6}"
			f"{row.price_text:>16}  "
			f"{color}{row.change_text:>8}{RESET4TXT}"
		)

		buffer = engine.history(row.symbol)

		if buffer is not None:

			lines.append(
				f"    {len(buffer)} pts, "
				f"{format_change(buffer.change_from_open)} from open, "
				f"last {buffer.last.label}"
			)

	return "\n".join(lines)

#———————————————————————————————————————————————————————————————————————————————

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:

	parser = argparse.ArgumentParser()
	parser.add_argument(
		"config",
		nargs="?",
		default="app.conf",
		help="Path to app.conf"
	)
	parser.add_argument(
		"--chart",
		action="append",
		default=[],
		help="Fetch history for SYMBOL (repeatable)"
	)
	parser.add_argument(
		"--toggle",
		help="Add/remove SYMBOL in the favorites and exit"
	)
	parser.add_argument(
		"--report",
		action="store_true",
		help="Write a CSV report after the first snapshot and exit"
	)
	return parser.parse_args(argv)

#———————————————————————————————————————————————————————————————————————————————

def main(argv: Optional[list[str]] = None) -> None:

	args = parse_args(argv)

	logger, queue_listener = set_global_logger("live_client.log")

	setup_uvloop(logger)

	(
		UNIVERSE,
		#
		RELAY_WS_URL,
		RELAY_HTTP_URL,
		RECONNECT_DELAY_SEC,
		#
		CHART_INTERVAL,
		CHART_LIMIT,
		CHART_REFRESH_SEC,
		#
		FAVORITES_PATH,
		REPORT_DIR,
	) = load_client_config(logger, args.config)

	favorites = FavoriteStore(FAVORITES_PATH, logger)
	favorites.load()

	engine = ReconciliationEngine(
		UNIVERSE,
		favorites,
		RelayKlinesClient(RELAY_HTTP_URL, logger),
		logger,
		interval = CHART_INTERVAL,
		limit	 = CHART_LIMIT,
	)

	if args.toggle:

		engine.toggle_favorite(args.toggle)
		queue_listener.stop()
		return

	(
		SHUTDOWN_MANAGER,
		MAIN_SHUTDOWN_EVENT,
	) = create_shutdown_manager(logger)

	SHUTDOWN_MANAGER.register_signal_handlers()

	def on_update(client: LiveClient) -> None:

		if args.report:

			if engine.rows():

				engine.export_report(REPORT_DIR)
				SHUTDOWN_MANAGER.graceful_shutdown()

			return

		print("\033[2J\033[H" + render(client), flush=True)

	client = LiveClient(
		RELAY_WS_URL,
		engine,
		logger,
		reconnect_delay_sec = RECONNECT_DELAY_SEC,
		refresh_sec			= CHART_REFRESH_SEC,
		on_update			= on_update,
		fetch_history		= not args.report,
	)

	async def session():

		SHUTDOWN_MANAGER.register_task("session", asyncio.current_task())

		for symbol in args.chart:

			await engine.select(symbol)

		await client.run(MAIN_SHUTDOWN_EVENT)

	try: asyncio.run(session())

	except (KeyboardInterrupt, asyncio.CancelledError):

		logger.info(
			f"[{my_name()}] session stopped "
			f"({'report written' if args.report else 'by user'})."
		)

	finally:

		SHUTDOWN_MANAGER.graceful_shutdown()
		SHUTDOWN_MANAGER.final_message()

		try: queue_listener.stop()
		except Exception as e:
			force_print_exception(my_name(), e)

#———————————————————————————————————————————————————————————————————————————————

if __name__ == "__main__":

	main()
