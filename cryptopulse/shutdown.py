# shutdown.py

#———————————————————————————————————————————————————————————————————————————————
# Process lifecycle for the relay and the viewer.
#
#	1st SIGINT/SIGTERM → shutdown event set, registered tasks cancelled,
#	                     cleanup callbacks run (once)
#	2nd SIGINT/SIGTERM → SystemExit(1)
#———————————————————————————————————————————————————————————————————————————————

import asyncio, threading, signal, logging
from typing import Callable, Optional
from cryptopulse.util import my_name

class ShutdownManager:

	def __init__(self,
		logger: logging.Logger
	):

		self.logger = logger
		self._lock	= threading.Lock()

		self._event: asyncio.Event = asyncio.Event()
		self._tasks: dict[str, asyncio.Task] = {}
		self._callbacks: list[Callable[[], None]] = []

		self._requested = False
		self._complete	= False
		self._farewell	= False

	#———————————————————————————————————————————————————————————————————————————

	@property
	def event(self) -> asyncio.Event:

		return self._event

	def is_shutting_down(self) -> bool:

		with self._lock:

			return self._requested

	def is_shutdown_complete(self) -> bool:

		with self._lock:

			return self._complete

	#———————————————————————————————————————————————————————————————————————————

	def register_task(self, name: str, task: asyncio.Task) -> None:

		with self._lock:

			self._tasks[name] = task

	def add_cleanup_callback(self, callback: Callable[[], None]) -> None:

		with self._lock:

			self._callbacks.append(callback)

	#———————————————————————————————————————————————————————————————————————————

	def _cancel_tasks(self, tasks: dict[str, asyncio.Task]) -> None:

		for name, task in tasks.items():

			if task.done(): continue

			try:

				# signal handlers may run outside the task's loop
				task.get_loop().call_soon_threadsafe(task.cancel)

			except RuntimeError as e:

				self.logger.warning(
					f"[{my_name()}] cannot cancel {name}: {e}"
				)
				continue

			self.logger.info(f"[{my_name()}]🛑 {name} cancelled")

	def _run_callbacks(self, callbacks: list[Callable[[], None]]) -> None:

		for callback in callbacks:

			try: callback()

			except Exception as e:

				self.logger.error(
					f"[{my_name()}] cleanup callback "
					f"{getattr(callback, '__name__', callback)} failed: {e}",
					exc_info=True
				)

	#———————————————————————————————————————————————————————————————————————————

	def graceful_shutdown(self, reason: Optional[str] = None) -> None:

		with self._lock:

			if self._requested: return

			self._requested = True
			tasks	  = dict(self._tasks)
			callbacks = list(self._callbacks)

		self.logger.info(
			f"[{my_name()}] starts"
			f"{f' ({reason})' if reason else ''}"
		)

		self._event.set()
		self._cancel_tasks(tasks)
		self._run_callbacks(callbacks)

		with self._lock:

			self._complete = True

		self.logger.info(f"[{my_name()}] completes")

	#———————————————————————————————————————————————————————————————————————————

	def final_message(self) -> None:

		with self._lock:

			if self._farewell: return
			self._farewell = True

		self.logger.info(
			f"[{my_name()}] おつかれさまでございます。"
		)

		for handler in self.logger.handlers:

			handler.flush()

	#———————————————————————————————————————————————————————————————————————————

	def signal_handler(self, signum: int, frame) -> None:

		if self.is_shutting_down():

			self.logger.warning(
				f"[{my_name()}] signal-{signum} again: forcing exit"
			)
			raise SystemExit(1)

		self.graceful_shutdown(f"signal {signum}")

	def register_signal_handlers(self) -> None:

		signal.signal(signal.SIGINT, self.signal_handler)
		signal.signal(signal.SIGTERM, self.signal_handler)
		self.logger.info(f"[{my_name()}]📡 SIGINT/SIGTERM")

#———————————————————————————————————————————————————————————————————————————————

def create_shutdown_manager(
	logger: logging.Logger
) -> tuple[ShutdownManager, asyncio.Event]:

	shutdown_manager = ShutdownManager(logger)

	return (
		shutdown_manager,
		shutdown_manager.event,
	)
