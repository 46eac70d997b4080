import pytest
from fastapi.testclient import TestClient

from app_config import Config
from app_context import AppContext
from client_log import ClientLog
from errors import FailureKind, UpstreamError
from event_bus import EventBus
from main import create_app
from models import TokenMetadata, TokenPrice
from token_tracker import TokenTracker

USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
BONK = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
JUP = "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN"
ADMIN = "letmein"


class FakeDataClient:
    def __init__(self):
        self.failing = set()
        self.unauthorized = set()
        self.malformed = set()

    def _check(self, address):
        if address in self.malformed:
            raise AttributeError("'NoneType' object has no attribute 'get'")
        if address in self.failing:
            raise UpstreamError(FailureKind.TRANSIENT, "upstream timeout")
        if address in self.unauthorized:
            raise UpstreamError(FailureKind.AUTH_FAILURE, "401 Unauthorized", status=401)

    async def get_token_metadata(self, address):
        if not address:
            raise ValueError("Token address is required")
        self._check(address)
        return TokenMetadata(name="Token", symbol="TKN", decimals=6)

    async def get_token_price(self, address):
        self._check(address)
        return TokenPrice(price=1.25, volume_24h=2_000_000)


class FakeHelius:
    def __init__(self):
        self.api_key = "oldkey"

    def update_api_key(self, new_key):
        if not new_key.strip():
            raise ValueError("API key must be a non-empty string")
        self.api_key = new_key
        return {"success": True, "message": "API key updated successfully"}

    async def test_api_key(self):
        return {"valid": True, "message": "API key is valid"}


@pytest.fixture
def context(tmp_path):
    data = FakeDataClient()
    bus = EventBus()
    tracker = TokenTracker(data, data, bus, poll_interval_sec=3600)
    config = Config.from_mapping({"ADMIN_TOKEN": ADMIN, "WS_PATH": "/ws"})
    ctx = AppContext(config, tracker, FakeHelius(), bus=bus, client_log=ClientLog(str(tmp_path / "logs" / "console.log")))
    ctx.data = data
    return ctx


@pytest.fixture
def client(context):
    with TestClient(create_app(context)) as test_client:
        yield test_client


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["tokens"] == 0
    assert body["uptime"] >= 0


def test_add_token_requires_address(client):
    resp = client.post("/api/token/add", json={})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Token address is required"}


def test_add_token_and_list(client):
    resp = client.post("/api/token/add", json={"address": USDC})
    assert resp.status_code == 200
    assert resp.json()["metadata"]["symbol"] == "TKN"

    tokens = client.get("/api/tokens").json()
    assert [t["address"] for t in tokens] == [USDC]
    assert tokens[0]["volume24h"] == "2.00M"


def test_add_token_upstream_failure_is_500(client, context):
    context.data.failing.add(BONK)
    resp = client.post("/api/token/add", json={"address": BONK})
    assert resp.status_code == 500
    assert "upstream timeout" in resp.json()["error"]


@pytest.mark.parametrize("mint", [JUP, "0" * 44, "short"])
def test_get_token_rejects_malformed_mints(client, mint):
    resp = client.get(f"/api/token/{mint}")
    assert resp.status_code == 400


def test_get_token_auto_tracks(client, context):
    resp = client.get(f"/api/token/{USDC}")
    body = resp.json()
    assert resp.status_code == 200
    assert body["price"]["price"] == 1.25
    assert "timestamp" in body
    assert "warning" not in body
    assert context.tracker.is_tracked(USDC)


def test_get_token_fallback_carries_warning(client, context):
    context.data.unauthorized.add(BONK)
    body = client.get(f"/api/token/{BONK}").json()
    assert body["isFallback"] is True
    assert "warning" in body


def test_get_token_failure_is_404_with_details(client, context):
    context.data.failing.add(BONK)
    resp = client.get(f"/api/token/{BONK}")
    assert resp.status_code == 404
    assert resp.json()["details"] == "upstream timeout"


def test_get_token_parse_error_is_404_with_details(client, context):
    context.data.malformed.add(BONK)
    resp = client.get(f"/api/token/{BONK}")
    assert resp.status_code == 404
    assert "NoneType" in resp.json()["details"]
    assert client.get("/api/tokens").json() == []


def test_delete_token(client, context):
    client.post("/api/token/add", json={"address": USDC})
    assert client.delete(f"/api/token/{USDC}").json() == {"success": True}
    assert not context.tracker.is_tracked(USDC)
    assert client.delete(f"/api/token/{USDC}").json() == {"success": True}


def test_update_api_key_checks_admin_token_then_key(client, context):
    resp = client.post("/api/admin/update-api-key", json={"apiKey": "newkey", "adminToken": "wrong"})
    assert resp.status_code == 401

    resp = client.post("/api/admin/update-api-key", json={"apiKey": "", "adminToken": ADMIN})
    assert resp.status_code == 400

    resp = client.post("/api/admin/update-api-key", json={"apiKey": "newkey", "adminToken": ADMIN})
    assert resp.json()["success"] is True
    assert context.helius.api_key == "newkey"


def test_test_api_key_requires_admin(client):
    assert client.get("/api/admin/test-api-key").status_code == 401
    assert client.get("/api/admin/test-api-key", params={"adminToken": ADMIN}).json()["valid"] is True


def test_client_log_endpoint(client, context):
    assert client.post("/api/log", json={"type": "WARN"}).status_code == 400

    resp = client.post("/api/log", json={"type": "WARN", "message": "socket lost", "data": {"retry": 1}})
    assert resp.json() == {"success": True}
    assert client.get("/api/log/test").json()["success"] is True

    with open(context.client_log.path, encoding="utf-8") as f:
        lines = f.read().splitlines()
    assert lines[0].endswith('[CLIENT] WARN: socket lost {"retry": 1}')
    assert "[CLIENT] INFO: Log API test" in lines[1]


def test_alerts_and_transactions_start_empty(client):
    assert client.get("/api/alerts", params={"limit": 5}).json() == []
    assert client.get("/api/transactions").json() == []


def test_websocket_initial_status_and_add_token(client):
    with client.websocket_connect("/ws") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "status"
        assert hello["data"] == {"status": "running", "tokens": []}

        ws.send_json({"type": "addToken", "mintAddress": USDC})
        update = ws.receive_json()
        assert update["type"] == "token_update"
        assert update["data"]["tokenId"] == USDC
        status = ws.receive_json()
        assert [t["address"] for t in status["data"]["tokens"]] == [USDC]


def test_websocket_commands_pause_tracker(client, context):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "command", "command": "stop"})
        assert ws.receive_json()["data"]["status"] == "stopped"
        assert context.tracker.paused

        ws.send_json({"type": "command", "command": "start"})
        assert ws.receive_json()["data"]["status"] == "running"

        ws.send_json({"type": "command", "command": "explode"})
        error = ws.receive_json()
        assert error["data"]["status"] == "error"
