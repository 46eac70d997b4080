import asyncio
import itertools
import json
import logging
from typing import Callable, Dict, Optional

import websockets
from solders.pubkey import Pubkey

from errors import FailureKind, InvalidAddressFormat, UpstreamError
from event_bus import EventBus

logger = logging.getLogger("SolanaRelay")

SUBSCRIPTION_KINDS = ("account", "program")

# Published once the relay gives up reconnecting.
RELAY_STATUS = "relayStatus"


class SolanaSubscriptionRelay:
    """
    Shares one upstream Solana websocket between dashboard clients.

    Each account:<address> / program:<address> channel is reference counted:
    the first acquire sends accountSubscribe / programSubscribe upstream,
    the last release sends the matching unsubscribe. Notifications are
    published on the bus under the channel name.
    """

    def __init__(
        self,
        ws_url: str,
        bus: EventBus,
        *,
        jsonrpc_version: str = "2.0",
        request_id: int = 1,
        commitment: str = "confirmed",
        encoding: str = "jsonParsed",
        connect_timeout: float = 10.0,
        reconnect_delay: float = 5.0,
        max_reconnect_attempts: int = 5,
        connector: Optional[Callable] = None,
    ):
        self.ws_url = ws_url
        self.bus = bus
        self.jsonrpc_version = jsonrpc_version
        self.commitment = commitment
        self.encoding = encoding
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._connector = connector or websockets.connect
        self._ids = itertools.count(request_id)

        self.websocket = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._closing = False
        self._refs: Dict[str, int] = {}
        self._pending: Dict[int, str] = {}
        self._sub_ids: Dict[str, int] = {}
        self._channels_by_sub: Dict[int, str] = {}

    @staticmethod
    def channel_name(kind: str, address: str) -> str:
        if kind not in SUBSCRIPTION_KINDS:
            raise ValueError(f"Unsupported subscription type: {kind}")
        try:
            Pubkey.from_string(address)
        except (TypeError, ValueError) as e:
            raise InvalidAddressFormat(address) from e
        return f"{kind}:{address}"

    def ref_count(self, channel: str) -> int:
        return self._refs.get(channel, 0)

    @property
    def channels(self):
        return list(self._refs)

    # ------------------------------------------------------------------
    # Reference counting
    # ------------------------------------------------------------------

    async def acquire(self, kind: str, address: str) -> str:
        channel = self.channel_name(kind, address)
        self._refs[channel] = self._refs.get(channel, 0) + 1
        if self._refs[channel] == 1:
            try:
                await self._subscribe(channel)
            except Exception:
                self._refs.pop(channel, None)
                raise
        return channel

    async def release(self, kind: str, address: str) -> bool:
        channel = f"{kind}:{address}"
        count = self._refs.get(channel, 0)
        if count <= 0:
            return False
        if count > 1:
            self._refs[channel] = count - 1
            return True
        del self._refs[channel]
        await self._unsubscribe(channel)
        return True

    # ------------------------------------------------------------------
    # Upstream socket
    # ------------------------------------------------------------------

    async def _ensure_connected(self):
        async with self._connect_lock:
            if self.websocket is not None:
                return
            try:
                websocket = await asyncio.wait_for(self._connector(self.ws_url), timeout=self.connect_timeout)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                raise UpstreamError(FailureKind.TRANSIENT, f"Solana websocket connect failed: {e}", provider="solana") from e
            self.websocket = websocket
            self._closing = False
            self._reader_task = asyncio.create_task(self._read_loop(websocket))
            logger.info("Solana relay socket connected")

    async def _send(self, payload: dict):
        await self.websocket.send(json.dumps(payload))

    async def _subscribe(self, channel: str):
        await self._ensure_connected()
        kind, _, address = channel.partition(":")
        request_id = next(self._ids)
        self._pending[request_id] = channel
        await self._send({
            "jsonrpc": self.jsonrpc_version,
            "id": request_id,
            "method": f"{kind}Subscribe",
            "params": [address, {"encoding": self.encoding, "commitment": self.commitment}],
        })
        logger.info(f"Requested {kind}Subscribe for {address}")

    async def _unsubscribe(self, channel: str):
        sub_id = self._sub_ids.pop(channel, None)
        if sub_id is None:
            return
        self._channels_by_sub.pop(sub_id, None)
        if self.websocket is None:
            return
        kind = channel.partition(":")[0]
        try:
            await self._send({
                "jsonrpc": self.jsonrpc_version,
                "id": next(self._ids),
                "method": f"{kind}Unsubscribe",
                "params": [sub_id],
            })
        except websockets.exceptions.WebSocketException as e:
            logger.warning(f"Unsubscribe for {channel} failed: {e}")

    async def _handle_frame(self, msg: dict):
        request_id = msg.get("id")
        if request_id in self._pending:
            channel = self._pending.pop(request_id)
            if "error" in msg:
                logger.error(f"Upstream rejected {channel}: {msg['error']}")
                self._refs.pop(channel, None)
                return
            sub_id = msg.get("result")
            self._sub_ids[channel] = sub_id
            self._channels_by_sub[sub_id] = channel
            if channel not in self._refs:
                # Released while the subscribe was in flight.
                await self._unsubscribe(channel)
            return

        method = str(msg.get("method") or "")
        if not method.endswith("Notification"):
            return
        params = msg.get("params") or {}
        channel = self._channels_by_sub.get(params.get("subscription"))
        if channel:
            await self.bus.publish(channel, params.get("result"))

    async def _read_loop(self, websocket):
        try:
            async for raw in websocket:
                try:
                    msg = json.loads(raw)
                except (TypeError, ValueError):
                    logger.error(f"Unparseable relay frame: {str(raw)[:80]}")
                    continue
                if isinstance(msg, dict):
                    await self._handle_frame(msg)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Solana relay socket closed: {e}")

        if websocket is not self.websocket:
            return
        self.websocket = None
        self._pending.clear()
        self._sub_ids.clear()
        self._channels_by_sub.clear()
        if self._closing or not self._refs:
            return

        await self._resubscribe()

    async def _resubscribe(self):
        attempts = 0
        while self._refs and not self._closing:
            if attempts >= self.max_reconnect_attempts:
                channels = list(self._refs)
                logger.error(f"Solana relay gave up after {attempts} reconnect attempts; {len(channels)} channel(s) idle")
                await self.bus.publish(RELAY_STATUS, {"status": "stopped", "channels": channels})
                return
            attempts += 1
            await asyncio.sleep(self.reconnect_delay)
            if self._closing:
                return
            logger.info(f"Reconnecting Solana relay ({attempts}/{self.max_reconnect_attempts})...")
            try:
                for channel in list(self._refs):
                    # A fresh acquire may already have resubscribed it.
                    if channel not in self._sub_ids and channel not in self._pending.values():
                        await self._subscribe(channel)
                return
            except UpstreamError as e:
                logger.warning(f"Solana relay reconnect failed: {e.detail}")

    async def close(self):
        self._closing = True
        task, self._reader_task = self._reader_task, None
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.warning(f"Error closing relay socket: {e}")
        if task is not None and not task.done():
            task.cancel()
        self._refs.clear()
        self._pending.clear()
        self._sub_ids.clear()
        self._channels_by_sub.clear()
