import asyncio
import logging
import signal

import pytest

from cryptopulse.shutdown import create_shutdown_manager

logger = logging.getLogger("test")

def test_graceful_shutdown_runs_once():
	manager, event = create_shutdown_manager(logger)
	calls = []
	manager.add_cleanup_callback(lambda: calls.append("cleanup"))

	manager.graceful_shutdown("first")
	manager.graceful_shutdown("second")

	assert event.is_set()
	assert manager.is_shutting_down()
	assert manager.is_shutdown_complete()
	assert calls == ["cleanup"]

def test_failing_callback_does_not_stop_the_rest():
	manager, _ = create_shutdown_manager(logger)
	calls = []

	def broken():
		raise RuntimeError("boom")

	manager.add_cleanup_callback(broken)
	manager.add_cleanup_callback(lambda: calls.append("after"))
	manager.graceful_shutdown()

	assert calls == ["after"]
	assert manager.is_shutdown_complete()

def test_registered_task_is_cancelled():
	async def scenario():
		manager, _ = create_shutdown_manager(logger)
		task = asyncio.create_task(asyncio.sleep(60))
		manager.register_task("sleeper", task)

		manager.graceful_shutdown()

		with pytest.raises(asyncio.CancelledError):
			await task

	asyncio.run(scenario())

def test_second_signal_forces_exit():
	manager, event = create_shutdown_manager(logger)

	manager.signal_handler(signal.SIGTERM, None)
	assert event.is_set()

	with pytest.raises(SystemExit):
		manager.signal_handler(signal.SIGTERM, None)
