import logging
import aiohttp
import pytest
from decimal import Decimal
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import cryptopulse.klines as klines_module
from cryptopulse.broadcast import Broadcaster
from cryptopulse.klines import KlinesPassthrough
from cryptopulse.relay_server import create_relay_server
from cryptopulse.state import LiveStateStore, LiveTick
from cryptopulse.universe import InstrumentUniverse

logger = logging.getLogger("test")

CANDLES = [
	[1700000000000, "67000.0", "67100.0", "66900.0", "67050.0", "12.5"],
	[1700003600000, "67050.0", "67200.0", "67000.0", "67150.0", "9.1"],
]

def make_server(max_connections=8):
	store = LiveStateStore(InstrumentUniverse(["BTCUSDT", "ETHUSDT"]))
	store.init_sentinels()
	store.set("BTCUSDT", LiveTick("BTCUSDT", Decimal("67000.5"), Decimal("1.2"), 1))
	broadcaster = Broadcaster(store, logger)
	server = create_relay_server(
		store = store,
		broadcaster = broadcaster,
		klines = KlinesPassthrough(
			"https://api.binance.com/api/v3/klines", "USDT", logger
		),
		config = {
			'CORS_ORIGINS': ["http://localhost:3000"],
			'MAX_RELAY_CONNECTIONS': max_connections,
		},
		shutdown_manager = None,
		logger = logger,
	)
	return server, TestClient(server.app)

def test_klines_rejects_bad_symbol():
	_, client = make_server()

	for query in ("", "?symbol=ETHBTC"):
		response = client.get("/api/klines" + query)
		assert response.status_code == 400
		assert response.json() == {"error": "Invalid symbol format"}

def test_klines_relays_upstream_verbatim(monkeypatch):
	seen = {}

	async def fake_get_json(url, params, timeout_sec):
		seen.update(params)
		return CANDLES

	monkeypatch.setattr(klines_module, "_get_json", fake_get_json)
	_, client = make_server()

	response = client.get("/api/klines?symbol=btcusdt")
	assert response.status_code == 200
	assert response.json() == CANDLES
	assert seen == {"symbol": "BTCUSDT", "interval": "1h", "limit": "24"}

def test_klines_upstream_failure_is_500(monkeypatch):

	async def failing_get_json(url, params, timeout_sec):
		raise aiohttp.ClientError("boom")

	monkeypatch.setattr(klines_module, "_get_json", failing_get_json)
	_, client = make_server()

	response = client.get("/api/klines?symbol=BTCUSDT&interval=1m&limit=60")
	assert response.status_code == 500
	assert response.json() == {"error": "Failed to fetch Binance data"}

def test_klines_forwards_non_numeric_limit(monkeypatch):
	seen = {}

	async def rejecting_get_json(url, params, timeout_sec):
		seen.update(params)
		raise aiohttp.ClientError("400, message='Bad Request'")

	monkeypatch.setattr(klines_module, "_get_json", rejecting_get_json)
	_, client = make_server()

	response = client.get("/api/klines?symbol=BTCUSDT&limit=abc")
	assert response.status_code == 500
	assert response.json() == {"error": "Failed to fetch Binance data"}
	assert seen["limit"] == "abc"

@pytest.mark.parametrize("path", ["/", "/ws"])
def test_websocket_sends_snapshot_on_connect(path):
	server, client = make_server()

	with client.websocket_connect(path) as ws:
		snapshot = ws.receive_json()
		status = client.get("/api/status").json()
		assert status["subscribers"] == 1
		assert status["clients"][0]["sent_batches"] == 0

	assert snapshot == [
		{"s": "BTCUSDT", "c": "67000.5", "P": "1.2"},
		{"s": "ETHUSDT", "c": "0", "P": "0"},
	]
	assert len(server.broadcaster) == 0

def test_connection_cap_closes_with_policy_violation():
	_, client = make_server(max_connections=0)

	with pytest.raises(WebSocketDisconnect) as exc_info:
		with client.websocket_connect("/") as ws:
			ws.receive_json()

	assert exc_info.value.code == 1008

def test_status_reports_store_and_fanout():
	_, client = make_server()

	status = client.get("/api/status").json()
	assert status["upstream"] == "unknown"
	assert status["subscribers"] == 0
	assert status["populated"] == 1
	assert status["universe"] == ["BTCUSDT", "ETHUSDT"]

def test_cors_allows_dashboard_origin():
	_, client = make_server()

	response = client.get(
		"/api/status", headers={"Origin": "http://localhost:3000"}
	)
	assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
