# relay_server.py

#———————————————————————————————————————————————————————————————————————————————

import asyncio, orjson, logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from cryptopulse.broadcast import Broadcaster
from cryptopulse.core import UpstreamIngestor
from cryptopulse.klines import (
	KlinesPassthrough,
	InvalidSymbolError,
	UpstreamError,
	DEFAULT_INTERVAL,
	DEFAULT_LIMIT,
)
from cryptopulse.state import LiveStateStore
from cryptopulse.util import (
	my_name,
	get_current_time_ms,
)

#———————————————————————————————————————————————————————————————————————————————
# Relay Server Class
#———————————————————————————————————————————————————————————————————————————————

class RelayServer:

	"""
	FastAPI surface of the relay:

		WS	/, /ws			snapshot, then one array per upstream batch
		GET	/api/klines		historical candles, relayed verbatim
		GET	/api/status		ingestor and fan-out counters
	"""

	#———————————————————————————————————————————————————————————————————————————
	# Initialization
	#———————————————————————————————————————————————————————————————————————————

	def __init__(
		self,
		store:			  LiveStateStore,
		broadcaster:	  Broadcaster,
		klines:			  KlinesPassthrough,
		config:			  dict,
		shutdown_manager,
		logger:			  logging.Logger,
		ingestor:		  Optional[UpstreamIngestor] = None,
	):

		"""
		Args:
			config: CORS_ORIGINS, MAX_RELAY_CONNECTIONS.
			shutdown_manager: called when the app lifespan ends; may be None.
			ingestor: reported by /api/status; may be None.
		"""

		self.store			  = store
		self.broadcaster	  = broadcaster
		self.klines			  = klines
		self.config			  = config
		self.shutdown_manager = shutdown_manager
		self.logger			  = logger
		self.ingestor		  = ingestor

		#———————————————————————————————————————————————————————————————————————
		# Connection Management (single event loop, no locks)
		#———————————————————————————————————————————————————————————————————————

		self.active_connections = 0

		self.app = self._create_fastapi_app()

	#———————————————————————————————————————————————————————————————————————————
	# FastAPI App Creation
	#———————————————————————————————————————————————————————————————————————————

	def _create_fastapi_app(self) -> FastAPI:

		@asynccontextmanager
		async def lifespan(app):

			try:

				yield

			except Exception as e:

				self.logger.error(
					f"[{my_name()}] Unhandled exception: {e}",
					exc_info=True
				)

			finally:

				if (
					self.shutdown_manager
					and not self.shutdown_manager.is_shutdown_complete()
				):

					self.logger.info(
						f"[{my_name()}] "
						f"ShutdownManager called"
					)
					self.shutdown_manager.graceful_shutdown()

		app = FastAPI(lifespan=lifespan)

		app.add_middleware(
			CORSMiddleware,
			allow_origins = self.config.get(
				'CORS_ORIGINS', ["http://localhost:3000"]
			),
			allow_methods = ["GET"],
			allow_headers = ["*"],
		)

		# Register routes

		app.get("/api/klines")(self._klines)
		app.get("/api/status")(self._status)

		app.websocket("/")(self._relay_websocket)
		app.websocket("/ws")(self._relay_websocket)

		return app

	#———————————————————————————————————————————————————————————————————————————
	# History Passthrough
	#———————————————————————————————————————————————————————————————————————————

	async def _klines(
		self,
		symbol:	  Optional[str] = None,
		interval: str = DEFAULT_INTERVAL,
		limit:	  str = str(DEFAULT_LIMIT),
	):

		# query values go upstream as given; Binance judges them

		try:

			data = await self.klines.fetch(symbol, interval, limit)

		except InvalidSymbolError:

			return JSONResponse(
				status_code = 400,
				content = {"error": "Invalid symbol format"},
			)

		except UpstreamError:

			return JSONResponse(
				status_code = 500,
				content = {"error": "Failed to fetch Binance data"},
			)

		return Response(
			content = orjson.dumps(data),
			media_type = "application/json",
		)

	#———————————————————————————————————————————————————————————————————————————
	# Monitoring
	#———————————————————————————————————————————————————————————————————————————

	async def _status(self):

		ingestor = self.ingestor

		return {
			"upstream": (
				ingestor.state.value if ingestor else "unknown"
			),
			"connect_count":	 ingestor.connect_count if ingestor else 0,
			"message_count":	 ingestor.message_count if ingestor else 0,
			"dropped_batches":	 ingestor.dropped_batches if ingestor else 0,
			"last_message_ms":	 ingestor.last_message_ms if ingestor else None,
			"subscribers":		 len(self.broadcaster),
			"clients": [
				{
					"label":		sub.label,
					"joined_ms":	sub.joined_ms,
					"sent_batches": sub.sent_batches,
				}
				for sub in self.broadcaster.subscribers()
			],
			"published_batches": self.broadcaster.published_batches,
			"populated":		 self.store.populated_count(),
			"universe":			 list(self.store.universe.symbols),
			"server_time_ms":	 get_current_time_ms(),
		}

	#———————————————————————————————————————————————————————————————————————————
	# WebSocket Handler
	#———————————————————————————————————————————————————————————————————————————

	async def _relay_websocket(
		self, websocket: WebSocket
	):

		"""
		Relay WebSocket handler. Inbound client messages are ignored; the
		handler only waits for the disconnect.
		"""

		if (
			self.active_connections
			>= self.config.get('MAX_RELAY_CONNECTIONS', 256)
		):

			await websocket.close(
				code=1008,
				reason="Too many relay clients connected."
			)
			self.logger.warning(
				f"[{my_name()}] "
				f"Connection refused: too many clients."
			)
			return

		self.active_connections += 1

		client = websocket.client
		label  = f"{client.host}:{client.port}" if client else "?"
		reason = "closed"

		try:

			await websocket.accept()
			await self.broadcaster.register(websocket, label)

			while True:

				message = await websocket.receive()

				if message["type"] == "websocket.disconnect":

					reason = "client disconnects"
					break

		except WebSocketDisconnect:

			reason = "client disconnects"

		except asyncio.CancelledError:

			reason = "handler cancelled"
			raise

		except Exception as e:

			reason = f"ws error: {e}"
			self.logger.warning(
				f"[{my_name()}] {label} ws error: {e}",
				exc_info=True
			)

		finally:

			self.broadcaster.unregister(websocket, reason)
			self.active_connections -= 1

#———————————————————————————————————————————————————————————————————————————————

def create_relay_server(
	store:			  LiveStateStore,
	broadcaster:	  Broadcaster,
	klines:			  KlinesPassthrough,
	config:			  dict,
	shutdown_manager,
	logger:			  logging.Logger,
	ingestor:		  Optional[UpstreamIngestor] = None,
) -> RelayServer:

	return RelayServer(
		store,
		broadcaster,
		klines,
		config,
		shutdown_manager,
		logger,
		ingestor,
	)

#———————————————————————————————————————————————————————————————————————————————
