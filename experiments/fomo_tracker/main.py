
import json
import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from app_config import Config, load_config
from app_context import AppContext
from errors import InvalidAddressFormat
from solana_relay import RELAY_STATUS, SUBSCRIPTION_KINDS
from solana_rpc import MINT_ADDRESS_LENGTH, is_valid_mint_address

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
STATIC_DIR = os.path.join(BASE_DIR, "static")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
for noisy in ("aiohttp", "websockets", "httpx", "uvicorn.access"):
    logging.getLogger(noisy).setLevel(logging.WARNING)
logger = logging.getLogger("Server")

FALLBACK_WARNING = "Using fallback data: upstream API unavailable, rate limited or unauthorized"


class AddTokenRequest(BaseModel):
    address: Optional[str] = None
    thresholds: Optional[Dict[str, float]] = None


class UpdateApiKeyRequest(BaseModel):
    apiKey: Optional[str] = None
    adminToken: Optional[str] = None


class ClientLogRequest(BaseModel):
    type: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Any] = None
    timestamp: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _token_update_data(snapshot: dict, previous_price: Optional[float] = None) -> dict:
    price = snapshot.get("price") or {}
    metadata = snapshot.get("metadata") or {}
    data = {
        "tokenId": snapshot.get("address"),
        "address": snapshot.get("address"),
        "name": metadata.get("name"),
        "symbol": metadata.get("symbol"),
        "image": metadata.get("image"),
        "price": price.get("price"),
        "priceChange24h": price.get("priceChange24h"),
        "volume24h": price.get("volume24h"),
        "marketCap": price.get("marketCap"),
        "isFallback": bool(snapshot.get("isFallback", price.get("isFallback"))),
    }
    if previous_price is not None:
        data["previousPrice"] = previous_price
    return data


class FeedService:
    """Dashboard websocket fan-out: tracker events in, JSON frames out."""

    def __init__(self, context: AppContext):
        self.context = context
        self.active_connections: List[WebSocket] = []
        self.interests: Dict[WebSocket, Set[str]] = {}
        self.last_prices: Dict[str, Optional[float]] = {}
        self._channel_callbacks = {}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        self.interests[websocket] = set()
        await websocket.send_json({"type": "status", "data": self.status_payload()})

    async def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        for channel in self.interests.pop(websocket, set()):
            await self._release(channel)

    async def broadcast(self, message: dict, channel: Optional[str] = None):
        for connection in list(self.active_connections):
            if channel is not None and channel not in self.interests.get(connection, ()):
                continue
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping dead websocket: {e}")
                await self.disconnect(connection)

    def status_payload(self, status: Optional[str] = None) -> dict:
        tracker = self.context.tracker
        if status is None:
            status = "stopped" if tracker.paused else "running"
        return {"status": status, "tokens": tracker.get_tracked_tokens()}

    # ------------------------------------------------------------------
    # Tracker events
    # ------------------------------------------------------------------

    def wire(self):
        bus = self.context.bus
        bus.subscribe("tokenAdded", self.on_token_added)
        bus.subscribe("tokenUpdate", self.on_token_update)
        bus.subscribe("tokenRemoved", self.on_token_removed)
        bus.subscribe("priceAlert", self.on_price_alert)
        bus.subscribe("transaction", self.on_transaction)
        bus.subscribe(RELAY_STATUS, self.on_relay_status)

    async def on_token_added(self, payload: dict):
        self.last_prices[payload["address"]] = (payload.get("price") or {}).get("price")
        await self.broadcast({"type": "token_update", "data": _token_update_data(payload)})
        await self.broadcast({"type": "status", "data": self.status_payload()})

    async def on_token_update(self, snapshot: dict):
        address = snapshot.get("address")
        previous = self.last_prices.get(address)
        self.last_prices[address] = (snapshot.get("price") or {}).get("price")
        await self.broadcast({"type": "token_update", "data": _token_update_data(snapshot, previous)})

    async def on_token_removed(self, payload: dict):
        self.last_prices.pop(payload.get("address"), None)
        data = self.status_payload()
        data["removed"] = payload.get("address")
        await self.broadcast({"type": "status", "data": data})

    async def on_price_alert(self, alert: dict):
        await self.broadcast({"type": "alert", "data": alert})

    async def on_transaction(self, tx: dict):
        data = dict(tx)
        data["tokenId"] = tx.get("mintAddress")
        await self.broadcast({"type": "transaction", "data": data})

    async def on_relay_status(self, payload: dict):
        data = {"status": "error", "message": "Solana subscriptions stopped", "channels": payload.get("channels", [])}
        await self.broadcast({"type": "status", "data": data})

    # ------------------------------------------------------------------
    # Solana account / program channels
    # ------------------------------------------------------------------

    def _channel_callback(self, channel: str):
        kind, _, address = channel.partition(":")
        frame_type = f"{kind}_update"

        async def forward(data):
            await self.broadcast({"type": frame_type, "subscription": address, "data": data}, channel=channel)

        return forward

    async def _acquire(self, websocket: WebSocket, kind: str, address: str):
        relay = self.context.relay
        if relay is None:
            raise RuntimeError("Solana subscriptions are not available")
        channel = relay.channel_name(kind, address)
        if channel in self.interests.get(websocket, set()):
            return channel
        await relay.acquire(kind, address)
        self.interests.setdefault(websocket, set()).add(channel)
        if channel not in self._channel_callbacks:
            callback = self._channel_callback(channel)
            self._channel_callbacks[channel] = callback
            self.context.bus.subscribe(channel, callback)
        return channel

    async def _release(self, channel: str):
        relay = self.context.relay
        kind, _, address = channel.partition(":")
        if relay is not None:
            await relay.release(kind, address)
        still_wanted = any(channel in chans for chans in self.interests.values())
        if not still_wanted:
            callback = self._channel_callbacks.pop(channel, None)
            if callback is not None:
                self.context.bus.unsubscribe(channel, callback)

    # ------------------------------------------------------------------
    # Inbound client frames
    # ------------------------------------------------------------------

    async def handle_client_message(self, websocket: WebSocket, message: dict):
        msg_type = message.get("type")
        tracker = self.context.tracker

        if msg_type in ("subscribe", "unsubscribe"):
            sub = message.get("subscription") or {}
            kind, address = sub.get("type"), sub.get("address")
            if kind not in SUBSCRIPTION_KINDS or not address:
                raise ValueError(f"Invalid subscription: {sub}")
            if msg_type == "subscribe":
                await self._acquire(websocket, kind, address)
            else:
                channel = f"{kind}:{address}"
                chans = self.interests.get(websocket, set())
                if channel in chans:
                    chans.discard(channel)
                    await self._release(channel)
        elif msg_type == "command":
            command = message.get("command")
            if command == "stop":
                tracker.pause()
            elif command == "start":
                tracker.resume()
            else:
                raise ValueError(f"Unknown command: {command}")
            await self.broadcast({"type": "status", "data": self.status_payload()})
        elif msg_type == "addToken":
            await tracker.track_token(message.get("mintAddress"))
        elif msg_type == "stopTracking":
            await tracker.stop_tracking(message.get("mintAddress"))
        else:
            logger.debug(f"Ignoring client frame of type {msg_type!r}")


def create_app(context: Optional[AppContext] = None, config: Optional[Config] = None) -> FastAPI:
    owns_context = context is None
    if context is None:
        context = AppContext.build(config)
    ws_path = context.config.get_string("WS_PATH")
    service = FeedService(context)
    service.wire()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting FOMO tracker service...")
        yield
        logger.info("Shutting down...")
        if owns_context:
            await context.close()
        else:
            await context.tracker.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.context = context
    app.state.feed = service
    if os.path.isdir(STATIC_DIR):
        app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

    def ctx(request: Request) -> AppContext:
        return request.app.state.context

    def admin_ok(request: Request, token: Optional[str]) -> bool:
        return bool(token) and secrets.compare_digest(str(token), ctx(request).admin_token)

    @app.get("/")
    async def index():
        file_path = os.path.join(STATIC_DIR, "index.html")
        if not os.path.exists(file_path):
            return JSONResponse(status_code=404, content={"error": "Dashboard not installed"})
        return FileResponse(file_path)

    @app.get("/api/health")
    async def health(request: Request):
        context = ctx(request)
        return {"status": "ok", "tokens": len(context.tracker.get_tracked_tokens()), "uptime": context.uptime}

    @app.post("/api/token/add")
    async def add_token(request: Request, item: AddTokenRequest):
        if not item.address:
            return JSONResponse(status_code=400, content={"error": "Token address is required"})
        try:
            return await ctx(request).tracker.track_token(item.address, item.thresholds)
        except InvalidAddressFormat as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        except Exception as e:
            logger.error(f"Error adding token {item.address}: {e}")
            return JSONResponse(status_code=500, content={"error": str(e)})

    @app.get("/api/token/{mint}")
    async def get_token(request: Request, mint: str):
        if len(mint) != MINT_ADDRESS_LENGTH or not is_valid_mint_address(mint):
            return JSONResponse(status_code=400, content={"error": "Invalid mint address format"})
        tracker = ctx(request).tracker
        try:
            if not tracker.is_tracked(mint):
                await tracker.track_token(mint)
            data = await tracker.get_token_data(mint)
        except Exception as e:
            logger.warning(f"Could not track {mint}: {e}")
            return JSONResponse(
                status_code=404,
                content={"error": "Token not found or could not be tracked", "details": str(e)},
            )
        data["timestamp"] = _now_iso()
        if data.get("isFallback"):
            data["warning"] = FALLBACK_WARNING
        return data

    @app.delete("/api/token/{mint}")
    async def delete_token(request: Request, mint: str):
        await ctx(request).tracker.stop_tracking(mint)
        return {"success": True}

    @app.get("/api/tokens")
    async def list_tokens(request: Request):
        return ctx(request).tracker.get_tracked_tokens()

    @app.get("/api/alerts")
    async def list_alerts(request: Request, limit: Optional[int] = None):
        return ctx(request).tracker.get_recent_alerts(limit)

    @app.get("/api/transactions")
    async def list_transactions(request: Request, limit: Optional[int] = None):
        return ctx(request).tracker.get_recent_transactions(limit)

    @app.post("/api/admin/update-api-key")
    async def update_api_key(request: Request, item: UpdateApiKeyRequest):
        if not admin_ok(request, item.adminToken):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        if not isinstance(item.apiKey, str) or not item.apiKey.strip():
            return JSONResponse(status_code=400, content={"error": "Invalid API key"})
        try:
            return ctx(request).helius.update_api_key(item.apiKey)
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})

    @app.get("/api/admin/test-api-key")
    async def test_api_key(request: Request, adminToken: Optional[str] = None):
        if not admin_ok(request, adminToken):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        return await ctx(request).helius.test_api_key()

    @app.post("/api/log")
    async def client_log(request: Request, item: ClientLogRequest):
        if not item.message:
            return JSONResponse(status_code=400, content={"success": False, "error": "Invalid log data"})
        success = ctx(request).client_log.write(item.model_dump())
        return {"success": success}

    @app.get("/api/log/test")
    async def client_log_test(request: Request):
        sink = ctx(request).client_log
        success = sink.write({"type": "INFO", "message": "Log API test", "data": {"test": True, "timestamp": _now_iso()}})
        return {"success": success, "message": "Log API test endpoint", "logPath": sink.path}

    @app.websocket(ws_path)
    async def websocket_endpoint(websocket: WebSocket):
        await service.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning(f"Unparseable client frame: {raw[:80]}")
                    continue
                if not isinstance(message, dict):
                    continue
                try:
                    await service.handle_client_message(websocket, message)
                except WebSocketDisconnect:
                    raise
                except Exception as e:
                    logger.warning(f"Client frame {message.get('type')!r} failed: {e}")
                    await websocket.send_json({"type": "status", "data": {"status": "error", "message": str(e)}})
        except WebSocketDisconnect:
            await service.disconnect(websocket)

    return app


def main():
    config = load_config()
    uvicorn.run(create_app(config=config), host="0.0.0.0", port=config.get_int("PORT"))


if __name__ == "__main__":
    main()
