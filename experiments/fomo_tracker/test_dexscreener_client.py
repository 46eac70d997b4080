import asyncio

import pytest

from dexscreener_client import SOL_MINT, USDC_MINT, DexScreenerClient
from errors import FailureKind, InvalidAddressFormat, UpstreamError

TOKEN = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


def _pair(chain="solana", base=TOKEN, quote=SOL_MINT, liquidity=1000.0, price="0.00002", **extra):
    pair = {
        "chainId": chain,
        "baseToken": {"address": base, "name": "Bonk", "symbol": "BONK"},
        "quoteToken": {"address": quote},
        "liquidity": {"usd": liquidity},
        "volume": {"h24": 5000},
        "priceUsd": price,
        "priceChange": {"h24": -3.5},
        "info": {"imageUrl": "https://img/bonk.png"},
    }
    pair.update(extra)
    return pair


class FakeGet:
    def __init__(self, status, data):
        self.status = status
        self.data = data
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        return self.status, self.data


class FakeRpc:
    async def get_mint_info(self, address):
        return {"decimals": 5, "supply": 1.0}


def _client(get, **kwargs):
    client = DexScreenerClient("https://api.dexscreener.com/latest/", **kwargs)
    client._get_json = get
    return client


def test_rate_limit_degrades_to_fallback_records():
    async def run():
        client = _client(FakeGet(429, {"error": "Too Many Requests"}))
        meta = await client.get_token_metadata(TOKEN)
        price = await client.get_token_price(TOKEN)
        assert meta.is_fallback and meta.symbol == "FALLBACK"
        assert price.is_fallback and price.price == 0.001

    asyncio.run(run())


def test_no_pairs_raises_transient():
    async def run():
        with pytest.raises(UpstreamError) as exc:
            await _client(FakeGet(200, {"pairs": []})).get_token_metadata(TOKEN)
        assert exc.value.kind == FailureKind.TRANSIENT
        assert "No pairs found" in exc.value.detail

    asyncio.run(run())


def test_best_pair_prefers_solana_base_token_with_most_liquidity():
    async def run():
        pairs = [
            _pair(chain="ethereum", liquidity=10_000_000, price="9"),
            _pair(liquidity=500, price="1"),
            _pair(liquidity=50_000, price="2", quote=USDC_MINT),
            _pair(base=SOL_MINT, quote=TOKEN, liquidity=900_000, price="3"),
        ]
        price = await _client(FakeGet(200, {"pairs": pairs})).get_token_price(TOKEN)
        assert price.price == 2.0

    asyncio.run(run())


def test_price_fields_and_fdv_fallback_for_market_cap():
    async def run():
        get = FakeGet(200, {"pairs": [_pair(fdv=123456.0)]})
        client = _client(get)

        price = await client.get_token_price(TOKEN)
        await client.get_token_price(TOKEN)

        assert price.price == 0.00002
        assert price.price_change_24h == -3.5
        assert price.volume_24h == 5000.0
        assert price.market_cap == 123456.0
        assert get.urls == [f"https://api.dexscreener.com/latest/dex/tokens/{TOKEN}"]

    asyncio.run(run())


def test_metadata_uses_rpc_decimals_when_available():
    async def run():
        client = _client(FakeGet(200, {"pairs": [_pair()]}), rpc=FakeRpc())
        meta = await client.get_token_metadata(TOKEN)
        assert meta.name == "Bonk"
        assert meta.symbol == "BONK"
        assert meta.image == "https://img/bonk.png"
        assert meta.decimals == 5
        assert not meta.is_fallback

    asyncio.run(run())


def test_short_address_rejected_before_request():
    async def run():
        get = FakeGet(200, {"pairs": [_pair()]})
        with pytest.raises(InvalidAddressFormat):
            await _client(get).get_token_price("abc")
        assert get.urls == []

    asyncio.run(run())
