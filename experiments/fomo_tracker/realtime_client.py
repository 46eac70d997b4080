import asyncio
import json
import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

import websockets

from event_bus import EventBus, is_address_channel, split_address_channel

logger = logging.getLogger("RealtimeClient")


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    FALLBACK_MODE = "FALLBACK_MODE"


def _token_key(data: dict) -> Optional[str]:
    return data.get("tokenId") or data.get("address") or data.get("mintAddress")


class RealtimeClient:
    """
    Client side of the dashboard push channel.

    Inbound frames are re-published on the bus under dashboard channel
    names. A dropped link is retried max_reconnect_attempts times,
    reconnect_delay seconds apart; past that the client parks in
    FALLBACK_MODE and announces it with a single status "stopped" event.
    """

    def __init__(
        self,
        url: str,
        bus: Optional[EventBus] = None,
        *,
        connect_timeout: float = 3.0,
        reconnect_delay: float = 5.0,
        max_reconnect_attempts: int = 5,
        connector: Optional[Callable] = None,
    ):
        self.url = url
        self.bus = bus or EventBus()
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._connector = connector or websockets.connect

        self.state = ConnectionState.DISCONNECTED
        self.websocket = None
        self.reconnect_attempts = 0
        self.fallback_mode = False
        self._closing = False
        self._reader_task: Optional[asyncio.Task] = None
        self._disconnect_handlers: List[Callable] = []
        self._transaction_counts: Dict[str, int] = {}

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self.websocket is not None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        self._closing = False
        self.fallback_mode = False
        self.reconnect_attempts = 0
        self.state = ConnectionState.CONNECTING
        if await self._open():
            return True
        await self.enable_fallback_mode()
        return False

    async def _open(self) -> bool:
        try:
            websocket = await asyncio.wait_for(self._connector(self.url), timeout=self.connect_timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"WebSocket connection to {self.url} failed: {e}")
            return False

        self.websocket = websocket
        self.state = ConnectionState.CONNECTED
        logger.info(f"WebSocket connected to {self.url}")

        for channel in self.bus.channels():
            if is_address_channel(channel):
                await self._send_subscription("subscribe", channel)

        self._reader_task = asyncio.create_task(self._read_loop(websocket))
        return True

    async def _read_loop(self, websocket):
        first_frame = True
        try:
            async for raw in websocket:
                if first_frame:
                    first_frame = False
                    self.reconnect_attempts = 0
                await self._handle_raw(raw)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"WebSocket closed: {e}")

        if websocket is not self.websocket:
            return
        self.websocket = None
        if self._closing or self.fallback_mode:
            return

        logger.warning("WebSocket connection lost")
        for handler in list(self._disconnect_handlers):
            try:
                result = handler()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Disconnect handler failed")
        await self._reconnect()

    async def _reconnect(self):
        self.state = ConnectionState.RECONNECTING
        while not self._closing and not self.fallback_mode:
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                logger.error("Max reconnection attempts reached, switching to fallback mode")
                await self.enable_fallback_mode()
                return
            self.reconnect_attempts += 1
            logger.info(f"Attempting to reconnect ({self.reconnect_attempts}/{self.max_reconnect_attempts})...")
            await asyncio.sleep(self.reconnect_delay)
            if self._closing or self.fallback_mode:
                return
            if await self._open():
                return

    async def enable_fallback_mode(self):
        if self.fallback_mode:
            return
        self.fallback_mode = True
        self.state = ConnectionState.FALLBACK_MODE
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.warning(f"Error closing socket on fallback: {e}")
        logger.warning("Realtime updates stopped; running in fallback mode")
        await self.bus.publish("status", {"status": "stopped"})

    async def disconnect(self):
        self._closing = True
        task, self._reader_task = self._reader_task, None
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.warning(f"Error closing socket: {e}")
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self.state = ConnectionState.DISCONNECTED

    def on_disconnect(self, handler: Callable) -> Callable:
        self._disconnect_handlers.append(handler)
        return handler

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message: dict) -> bool:
        if not self.connected:
            logger.debug(f"Not connected; dropping outbound {message.get('type')}")
            return False
        try:
            await self.websocket.send(json.dumps(message))
        except websockets.exceptions.WebSocketException as e:
            logger.warning(f"Send failed: {e}")
            return False
        return True

    async def send_command(self, command: str) -> bool:
        return await self.send({"type": "command", "command": command})

    async def _send_subscription(self, action: str, channel: str) -> bool:
        kind, address = split_address_channel(channel)
        return await self.send({"type": action, "subscription": {"type": kind, "address": address}})

    async def subscribe(self, channel: str, callback: Callable) -> Callable:
        first = self.bus.subscriber_count(channel) == 0
        self.bus.subscribe(channel, callback)
        if first and is_address_channel(channel):
            await self._send_subscription("subscribe", channel)
        return callback

    async def unsubscribe(self, channel: str, callback: Callable) -> bool:
        removed = self.bus.unsubscribe(channel, callback)
        if removed and is_address_channel(channel) and self.bus.subscriber_count(channel) == 0:
            await self._send_subscription("unsubscribe", channel)
        return removed

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _handle_raw(self, raw):
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.error(f"Error parsing WebSocket message: {str(raw)[:80]}")
            return
        if isinstance(message, dict):
            await self.handle_message(message)

    async def handle_message(self, message: dict) -> Optional[str]:
        """Routes one inbound frame to its bus channel; returns the channel or None."""
        msg_type = message.get("type")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {} if data is None else data

        if msg_type == "token_update":
            channel = "tokenUpdate"
            data = dict(data)
            data["isLiveUpdating"] = True
            data["lastUpdated"] = time.time()
            price, previous = data.get("price"), data.get("previousPrice")
            if price and previous:
                if price > previous:
                    data["priceTrend"] = "up"
                elif price < previous:
                    data["priceTrend"] = "down"
                else:
                    data["priceTrend"] = "stable"
        elif msg_type == "market_activity":
            channel = "marketActivity"
            data = dict(data)
            buys, sells = data.get("buyCount"), data.get("sellCount")
            if not data.get("buyRatio") and buys and sells:
                total = buys + sells
                data["buyRatio"] = buys / total * 100
                data["sellRatio"] = sells / total * 100
        elif msg_type == "transaction":
            channel = "transaction"
            key = _token_key(data) if isinstance(data, dict) else None
            if key:
                count = self._transaction_counts.get(key, 0) + 1
                self._transaction_counts[key] = count
                await self.bus.publish("transactionCount", {"tokenId": key, "recentTxCount": count})
        elif msg_type in ("alert", "status", "slot"):
            channel = msg_type
        elif msg_type in ("account_update", "program_update") and message.get("subscription"):
            prefix = "account" if msg_type == "account_update" else "program"
            channel = f"{prefix}:{message['subscription']}"
        else:
            logger.debug(f"Ignoring frame of type {msg_type!r}")
            return None

        await self.bus.publish(channel, data)
        return channel

    def transaction_count(self, token_id: str) -> int:
        return self._transaction_counts.get(token_id, 0)
