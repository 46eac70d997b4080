import asyncio
import json
import logging

import pytest

from errors import FailureKind, InvalidAddressFormat, UpstreamError
from helius_client import HeliusClient

MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
API_KEY = "abcd1234efgh5678"

ASSET = {
    "content": {
        "metadata": {"name": "USD Coin", "symbol": "USDC", "description": "stable"},
        "links": {"image": "https://img/usdc.png"},
    },
    "token_info": {
        "symbol": "USDC",
        "decimals": 6,
        "supply": 1_000_000,
        "price_info": {"price_per_token": 1.0, "currency": "USDC"},
    },
}


class RecordingTransport:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.payloads = []

    async def __call__(self, payload):
        self.payloads.append(payload)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _client(transport=None, **kwargs):
    client = HeliusClient(API_KEY, "https://rpc.example", "wss://ws.example", **kwargs)
    if transport is not None:
        client._post_json = transport
    return client


def test_metadata_auth_failure_returns_uncached_fallback():
    async def run():
        transport = RecordingTransport((401, {"error": {"message": "Unauthorized"}}))
        client = _client(transport)

        first = await client.get_token_metadata(MINT)
        await client.get_token_metadata(MINT)

        assert first.is_fallback
        assert first.name == "Token EPjFWd...Dt1v"
        assert len(transport.payloads) == 2

    asyncio.run(run())


def test_invalid_api_key_message_counts_as_auth_failure():
    async def run():
        transport = RecordingTransport((200, {"error": {"code": -32000, "message": "Invalid API key provided"}}))
        meta = await _client(transport).get_token_metadata(MINT)
        assert meta.is_fallback

    asyncio.run(run())


def test_metadata_is_parsed_and_cached():
    async def run():
        transport = RecordingTransport((200, {"result": ASSET}))
        client = _client(transport)

        meta = await client.get_token_metadata(MINT)
        again = await client.get_token_metadata(MINT)

        assert meta.name == "USD Coin"
        assert meta.symbol == "USDC"
        assert meta.image == "https://img/usdc.png"
        assert meta.decimals == 6
        assert again is meta
        assert len(transport.payloads) == 1
        assert transport.payloads[0]["method"] == "getAsset"
        assert transport.payloads[0]["params"]["id"] == MINT

    asyncio.run(run())


def test_metadata_server_error_propagates():
    async def run():
        transport = RecordingTransport((500, {"error": {"message": "internal error"}}))
        with pytest.raises(UpstreamError) as exc:
            await _client(transport).get_token_metadata(MINT)
        assert exc.value.kind == FailureKind.TRANSIENT

    asyncio.run(run())


def test_short_address_rejected_before_any_request():
    async def run():
        transport = RecordingTransport((200, {"result": ASSET}))
        with pytest.raises(InvalidAddressFormat) as exc:
            await _client(transport).get_token_price("short")
        assert "Invalid Solana address format: short" in str(exc.value)
        assert transport.payloads == []

    asyncio.run(run())


def test_price_method_not_found_returns_fallback():
    async def run():
        transport = RecordingTransport((200, {"error": {"code": -32601, "message": "Method not found"}}))
        price = await _client(transport).get_token_price(MINT)
        assert price.is_fallback
        assert price.price == 0.001

    asyncio.run(run())


def test_price_rate_limit_is_raised_as_fallback_eligible_error():
    async def run():
        transport = RecordingTransport((429, {"error": {"message": "Too many requests"}}))
        with pytest.raises(UpstreamError) as exc:
            await _client(transport).get_token_price(MINT)
        assert exc.value.kind == FailureKind.RATE_LIMITED
        assert exc.value.fallback_eligible

    asyncio.run(run())


def test_price_and_market_cap_from_asset():
    async def run():
        price = await _client(RecordingTransport((200, {"result": ASSET}))).get_token_price(MINT)
        assert price.price == 1.0
        assert price.market_cap == 1.0
        assert price.currency == "USDC"
        assert not price.is_fallback

    asyncio.run(run())


def test_update_api_key_validates_and_masks_audit_line(caplog):
    transport = RecordingTransport((200, {"result": ASSET}))
    client = _client(transport)
    client._metadata_cache[MINT] = {"ts": 0, "data": None}

    with pytest.raises(ValueError):
        client.update_api_key("   ")

    with caplog.at_level(logging.INFO, logger="HeliusAPI"):
        result = client.update_api_key("newkey9876543210")

    assert result["success"] is True
    assert client.api_key == "newkey9876543210"
    assert client._metadata_cache == {}
    assert "newkey9876543210" not in caplog.text
    assert API_KEY not in caplog.text
    assert "newk...3210" in caplog.text


def test_test_api_key_never_raises():
    async def run():
        ok = await _client(RecordingTransport((200, {"result": ASSET}))).test_api_key()
        denied = await _client(RecordingTransport((401, {"error": "Unauthorized"}))).test_api_key()
        broken = await _client(RecordingTransport(RuntimeError("dns failure"))).test_api_key()

        assert ok["valid"] is True
        assert denied == {"valid": False, "message": "API key is invalid or unauthorized"}
        assert broken["valid"] is False

    asyncio.run(run())


class FakeSocket:
    def __init__(self, frames):
        self.frames = [json.dumps(f) for f in frames]
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        await asyncio.sleep(0)
        if self.frames and not self.closed:
            return self.frames.pop(0)
        raise StopAsyncIteration

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def close(self):
        self.closed = True


def test_subscription_forwards_matching_notifications():
    async def run():
        socket = FakeSocket([
            {"jsonrpc": "2.0", "result": 42, "id": 7},
            {"method": "accountNotification", "params": {"subscription": 42, "result": {"value": {"lamports": 1}}}},
            {"method": "slotNotification", "params": {}},
        ])
        urls = []

        async def ws_connect(url):
            urls.append(url)
            return socket

        client = _client(ws_connect=ws_connect, request_id=7, encoding="jsonParsed", commitment="confirmed")
        received = []
        sub = await client.subscribe_to_token_transactions(MINT, received.append)
        await sub.reader_task

        assert urls == [f"wss://ws.example?api-key={API_KEY}"]
        assert socket.sent == [{
            "jsonrpc": "2.0",
            "id": 7,
            "method": "accountSubscribe",
            "params": [MINT, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        }]
        assert received == [{"subscription": 42, "result": {"value": {"lamports": 1}}}]

        await sub.close()
        assert socket.closed

    asyncio.run(run())


def test_subscription_open_failure_raises():
    async def run():
        async def ws_connect(url):
            raise OSError("refused")

        with pytest.raises(UpstreamError) as exc:
            await _client(ws_connect=ws_connect).subscribe_to_token_transactions(MINT, print)
        assert exc.value.kind == FailureKind.TRANSIENT

    asyncio.run(run())
