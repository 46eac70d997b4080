import asyncio
import json

from realtime_client import ConnectionState, RealtimeClient


class FakeSocket:
    """Yields its frames then closes; with hold=True it stays open until close()."""

    def __init__(self, frames=(), hold=False):
        self.frames = [json.dumps(f) for f in frames]
        self.hold = hold
        self.sent = []
        self.closed = False
        self._closed_event = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        await asyncio.sleep(0)
        if self.frames and not self.closed:
            return self.frames.pop(0)
        if self.hold and not self.closed:
            if self._closed_event is None:
                self._closed_event = asyncio.Event()
            await self._closed_event.wait()
        raise StopAsyncIteration

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def close(self):
        self.closed = True
        if self._closed_event is not None:
            self._closed_event.set()


class FakeConnector:
    def __init__(self, sockets=(), error=None):
        self.sockets = list(sockets)
        self.error = error
        self.calls = 0

    async def __call__(self, url):
        self.calls += 1
        if self.error:
            raise self.error
        return self.sockets.pop(0)


def _client(connector, **kwargs):
    kwargs.setdefault("reconnect_delay", 0)
    kwargs.setdefault("connect_timeout", 1.0)
    return RealtimeClient("ws://tracker.local/ws", connector=connector, **kwargs)


async def _wait_for(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def test_six_drops_end_in_fallback_with_single_stopped_status():
    async def run():
        connector = FakeConnector([FakeSocket() for _ in range(6)])
        client = _client(connector, max_reconnect_attempts=5)
        statuses = []
        client.bus.subscribe("status", statuses.append)

        assert await client.connect() is True
        await _wait_for(lambda: client.fallback_mode)
        await asyncio.sleep(0.02)

        assert client.state == ConnectionState.FALLBACK_MODE
        assert connector.calls == 6
        assert client.reconnect_attempts == 5
        assert statuses == [{"status": "stopped"}]

    asyncio.run(run())


def test_failed_explicit_connect_enters_fallback_immediately():
    async def run():
        connector = FakeConnector(error=OSError("connection refused"))
        client = _client(connector)
        statuses = []
        client.bus.subscribe("status", statuses.append)

        assert await client.connect() is False
        await asyncio.sleep(0.01)

        assert client.state == ConnectionState.FALLBACK_MODE
        assert connector.calls == 1
        assert statuses == [{"status": "stopped"}]

    asyncio.run(run())


def test_first_frame_on_reconnected_link_resets_attempts():
    async def run():
        held = FakeSocket(hold=True)
        connector = FakeConnector([
            FakeSocket(),
            FakeSocket(frames=[{"type": "slot", "data": {"slot": 1}}]),
            held,
        ])
        client = _client(connector)
        drops = []
        client.on_disconnect(lambda: drops.append(1))

        await client.connect()
        await _wait_for(lambda: connector.calls == 3 and client.connected)

        assert client.reconnect_attempts == 1
        assert len(drops) == 2
        await client.disconnect()
        assert client.state == ConnectionState.DISCONNECTED

    asyncio.run(run())


def test_address_subscriptions_are_resent_on_connect():
    async def run():
        socket = FakeSocket(hold=True)
        client = _client(FakeConnector([socket]))

        await client.subscribe("account:Acct111", lambda data: None)
        await client.subscribe("tokenUpdate", lambda data: None)
        await client.connect()

        assert socket.sent == [{"type": "subscribe", "subscription": {"type": "account", "address": "Acct111"}}]
        await client.disconnect()

    asyncio.run(run())


def test_address_subscriptions_are_resent_after_reconnect():
    async def run():
        dropped = FakeSocket()
        reconnected = FakeSocket(hold=True)
        connector = FakeConnector([dropped, reconnected])
        client = _client(connector)

        await client.subscribe("account:Acct111", lambda data: None)
        await client.subscribe("alert", lambda data: None)
        await client.connect()
        await _wait_for(lambda: connector.calls == 2 and client.connected)

        expected = [{"type": "subscribe", "subscription": {"type": "account", "address": "Acct111"}}]
        assert dropped.sent == expected
        assert reconnected.sent == expected
        await client.disconnect()

    asyncio.run(run())


def test_removing_last_address_subscriber_sends_unsubscribe():
    async def run():
        socket = FakeSocket(hold=True)
        client = _client(FakeConnector([socket]))
        await client.connect()

        cb_a = await client.subscribe("program:Prog111", lambda data: None)
        cb_b = await client.subscribe("program:Prog111", lambda data: "other")
        await client.unsubscribe("program:Prog111", cb_a)
        await client.unsubscribe("program:Prog111", cb_b)
        await client.send_command("stop")

        assert socket.sent == [
            {"type": "subscribe", "subscription": {"type": "program", "address": "Prog111"}},
            {"type": "unsubscribe", "subscription": {"type": "program", "address": "Prog111"}},
            {"type": "command", "command": "stop"},
        ]
        await client.disconnect()

    asyncio.run(run())


def test_disconnect_does_not_trigger_reconnect():
    async def run():
        connector = FakeConnector([FakeSocket(hold=True)])
        client = _client(connector)
        statuses = []
        client.bus.subscribe("status", statuses.append)

        await client.connect()
        await client.disconnect()
        await asyncio.sleep(0.02)

        assert connector.calls == 1
        assert statuses == []

    asyncio.run(run())


def test_inbound_frames_are_routed_and_enriched():
    async def run():
        client = _client(FakeConnector())
        seen = {}
        for channel in ("tokenUpdate", "marketActivity", "transaction", "transactionCount", "account:Acct111"):
            client.bus.subscribe(channel, lambda data, ch=channel: seen.setdefault(ch, []).append(data))

        await client.handle_message({"type": "token_update", "data": {"tokenId": "T", "price": 2.0, "previousPrice": 1.0}})
        await client.handle_message({"type": "market_activity", "data": {"buyCount": 3, "sellCount": 1}})
        await client.handle_message({"type": "transaction", "data": {"tokenId": "T"}})
        await client.handle_message({"type": "transaction", "data": {"tokenId": "T"}})
        await client.handle_message({"type": "account_update", "subscription": "Acct111", "data": {"lamports": 5}})
        unknown = await client.handle_message({"type": "mystery", "data": {}})

        update = seen["tokenUpdate"][0]
        assert update["isLiveUpdating"] is True
        assert update["priceTrend"] == "up"
        assert "lastUpdated" in update
        assert seen["marketActivity"][0]["buyRatio"] == 75.0
        assert seen["marketActivity"][0]["sellRatio"] == 25.0
        assert seen["transactionCount"][-1] == {"tokenId": "T", "recentTxCount": 2}
        assert client.transaction_count("T") == 2
        assert seen["account:Acct111"] == [{"lamports": 5}]
        assert unknown is None

    asyncio.run(run())
