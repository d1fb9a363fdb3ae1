# broadcast.py

#———————————————————————————————————————————————————————————————————————————————
# Subscriber Registry & Broadcaster
#
#	register(conn)	 → snapshot (sent as the connection's first message)
#	unregister(conn) → idempotent
#	publish(batch)	 → fire-and-forget fan-out, failures isolated
#
# Ordering: the snapshot is taken and the subscriber inserted into the
# registry with no suspension point in between, while the subscriber's send
# lock is held. Any batch published afterwards waits on that lock, so it can
# never overtake the snapshot. asyncio.Lock is FIFO, so batches keep their
# publish order per subscriber.
#———————————————————————————————————————————————————————————————————————————————

import asyncio, logging, orjson
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from cryptopulse.state import LiveStateStore, LiveTick
from cryptopulse.util import my_name, get_current_time_ms

#———————————————————————————————————————————————————————————————————————————————

class TextSender(Protocol):

	async def send_text(self, data: str) -> None: ...

#———————————————————————————————————————————————————————————————————————————————

@dataclass(eq=False)
class Subscriber:

	connection:	  TextSender
	label:		  str = "?"
	send_lock:	  asyncio.Lock = field(default_factory=asyncio.Lock)
	joined_ms:	  int = field(default_factory=get_current_time_ms)
	sent_batches: int = 0

	@property
	def key(self) -> int:

		return id(self.connection)

#———————————————————————————————————————————————————————————————————————————————

def encode_batch(ticks: Iterable[LiveTick]) -> str:

	return orjson.dumps(
		[tick.to_wire() for tick in ticks]
	).decode()

#———————————————————————————————————————————————————————————————————————————————

class Broadcaster:

	def __init__(self,
		store:			  LiveStateStore,
		logger:			  logging.Logger,
		send_timeout_sec: float = 2.0,
	):

		self.store			  = store
		self.logger			  = logger
		self.send_timeout_sec = send_timeout_sec

		self._subscribers: dict[int, Subscriber] = {}

		self.published_batches = 0
		self.dropped_subscribers = 0

	#———————————————————————————————————————————————————————————————————————————

	def __len__(self) -> int:

		return len(self._subscribers)

	def subscribers(self) -> list[Subscriber]:

		# a copy, so iteration tolerates concurrent removal

		return list(self._subscribers.values())

	def snapshot(self) -> list[dict[str, str]]:

		return [
			tick.to_wire()
			for _, tick in self.store.get_all()
		]

	#———————————————————————————————————————————————————————————————————————————

	async def register(
		self,
		connection: TextSender,
		label:		str = "?",
	) -> list[dict[str, str]]:

		sub = Subscriber(connection, label)

		await sub.send_lock.acquire()

		try:

			snapshot = self.snapshot()
			self._subscribers[sub.key] = sub

			await asyncio.wait_for(
				connection.send_text(
					orjson.dumps(snapshot).decode()
				),
				timeout = self.send_timeout_sec,
			)

		except BaseException:

			self._subscribers.pop(sub.key, None)
			raise

		finally:

			sub.send_lock.release()

		self.logger.info(
			f"[{my_name()}]🔌 {label} subscribed "
			f"({len(self._subscribers)} total)"
		)

		return snapshot

	#———————————————————————————————————————————————————————————————————————————

	def unregister(
		self,
		connection: TextSender,
		reason:		Optional[str] = None,
	) -> bool:

		sub = self._subscribers.pop(id(connection), None)

		if sub is None: return False

		self.logger.info(
			f"[{my_name()}]🔌 {sub.label} unsubscribed"
			f"{f' ({reason})' if reason else ''} "
			f"({len(self._subscribers)} remaining)"
		)

		return True

	#———————————————————————————————————————————————————————————————————————————

	async def _deliver(
		self,
		sub:	 Subscriber,
		payload: str,
	) -> None:

		async def locked_send():

			async with sub.send_lock:

				await sub.connection.send_text(payload)

		await asyncio.wait_for(
			locked_send(),
			timeout = self.send_timeout_sec,
		)

		sub.sent_batches += 1

	#———————————————————————————————————————————————————————————————————————————

	async def publish(self, batch: list[LiveTick]) -> int:

		"""
		Deliver one batch to every registered connection. A connection that
		fails or does not accept data within `send_timeout_sec` is
		unregistered; nothing raised here reaches the caller.
		Returns the number of successful deliveries.
		"""

		try:

			payload = encode_batch(batch)

		except Exception as e:

			self.logger.error(
				f"[{my_name()}] failed to encode batch: {e}",
				exc_info=True
			)
			return 0

		self.published_batches += 1

		subs = self.subscribers()

		if not subs: return 0

		results = await asyncio.gather(
			*(self._deliver(sub, payload) for sub in subs),
			return_exceptions = True,
		)

		delivered = 0
		failed: list[Subscriber] = []

		for sub, result in zip(subs, results):

			if isinstance(result, BaseException):

				failed.append(sub)
				self.dropped_subscribers += 1

				self.unregister(
					sub.connection,
					reason = (
						"send timeout"
						if isinstance(result, asyncio.TimeoutError)
						else f"send failed: {result!r}"
					),
				)

			else:

				delivered += 1

		if failed:

			await asyncio.gather(
				*(self._close(sub) for sub in failed),
				return_exceptions = True,
			)

		return delivered

	#———————————————————————————————————————————————————————————————————————————

	async def _close(self, sub: Subscriber) -> None:

		# ends the connection's handler; its own unregister is then a no-op

		close = getattr(sub.connection, "close", None)

		if close is None: return

		await asyncio.wait_for(
			close(code = 1011),
			timeout = self.send_timeout_sec,
		)
