import asyncio
import logging
import time
from typing import Dict, List, Optional

import aiohttp

from errors import FailureKind, UpstreamError, classify_failure
from models import TokenMetadata, TokenPrice
from solana_rpc import validate_address_length

logger = logging.getLogger("DexScreener")

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"


class DexScreenerClient:
    """
    Fetches token metadata and price from DexScreener pairs.

    There is no credential, so the only degradation path is rate limiting:
    HTTP 429 is answered with fallback records. Pair payloads are cached per
    address for cache_ttl_sec to keep the 60s poll well under the limit.
    """

    provider = "dexscreener"

    def __init__(
        self,
        base_url: str = "https://api.dexscreener.com/latest",
        *,
        min_address_length: int = 32,
        max_address_length: int = 44,
        cache_ttl_sec: float = 30.0,
        request_timeout_sec: float = 8.0,
        rpc=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.min_address_length = min_address_length
        self.max_address_length = max_address_length
        self.cache_ttl_sec = cache_ttl_sec
        self.request_timeout_sec = request_timeout_sec
        # Optional SolanaRpcClient used to fill in mint decimals.
        self.rpc = rpc
        self._pairs_cache: Dict[str, dict] = {}

    @classmethod
    def from_config(cls, config, rpc=None) -> "DexScreenerClient":
        return cls(
            config.get_string("DEXSCREENER_BASE_URL"),
            min_address_length=config.get_int("MIN_ADDRESS_LENGTH"),
            max_address_length=config.get_int("MAX_ADDRESS_LENGTH"),
            rpc=rpc,
        )

    def _to_float(self, value, default: float = 0.0) -> float:
        try:
            if value is None:
                return default
            return float(value)
        except (TypeError, ValueError):
            return default

    def _pair_sort_key(self, pair: dict, token_mint: str):
        quote_addr = str((pair.get("quoteToken", {}) or {}).get("address", "") or "")
        base_addr = str((pair.get("baseToken", {}) or {}).get("address", "") or "")

        quote_pref = 0
        if quote_addr == SOL_MINT:
            quote_pref = 3
        elif quote_addr == USDC_MINT:
            quote_pref = 2
        elif quote_addr == USDT_MINT:
            quote_pref = 1

        base_pref = 1 if base_addr == token_mint else 0
        liq = self._to_float((pair.get("liquidity", {}) or {}).get("usd", 0))
        vol_h24 = self._to_float((pair.get("volume", {}) or {}).get("h24", 0))
        return (base_pref, liq, quote_pref, vol_h24)

    def _select_best_pair(self, pairs: List[dict], token_mint: str) -> Optional[dict]:
        candidates = [p for p in pairs or [] if isinstance(p, dict)]
        sol_pairs = [p for p in candidates if str(p.get("chainId", "")).lower() == "solana"]
        candidates = sol_pairs or candidates
        if not candidates:
            return None
        return max(candidates, key=lambda p: self._pair_sort_key(p, token_mint))

    async def _get_json(self, url: str):
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_sec)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    return resp.status, {"error": text}
                return resp.status, await resp.json(content_type=None)

    async def _fetch_pairs(self, token_mint: str) -> List[dict]:
        cached = self._pairs_cache.get(token_mint)
        if cached and time.time() - cached["ts"] <= self.cache_ttl_sec:
            return cached["data"]

        url = f"{self.base_url}/dex/tokens/{token_mint}"
        try:
            status, data = await self._get_json(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(FailureKind.TRANSIENT, f"DexScreener request failed: {e}", provider=self.provider) from e

        if status != 200:
            message = str((data or {}).get("error", ""))
            kind = classify_failure(status, message)
            raise UpstreamError(kind, f"DexScreener API error: {status}", status=status, provider=self.provider)

        pairs = (data or {}).get("pairs") or []
        if not pairs:
            raise UpstreamError(FailureKind.TRANSIENT, f"No pairs found for token {token_mint}", provider=self.provider)
        self._pairs_cache[token_mint] = {"ts": time.time(), "data": pairs}
        return pairs

    async def get_token_metadata(self, address: str) -> TokenMetadata:
        if not address:
            raise ValueError("Token address is required")
        try:
            pairs = await self._fetch_pairs(address)
        except UpstreamError as e:
            if e.fallback_eligible:
                logger.warning(f"DexScreener {e.kind.value} for metadata of {address}; using fallback metadata")
                return TokenMetadata.fallback(address)
            raise

        pair = self._select_best_pair(pairs, address) or {}
        base = pair.get("baseToken", {}) or {}
        if base.get("address") != address:
            # Token is the quote side of every pair.
            quote = pair.get("quoteToken", {}) or {}
            if quote.get("address") == address:
                base = quote
        info = pair.get("info", {}) or {}

        decimals = None
        if self.rpc is not None:
            try:
                decimals = (await self.rpc.get_mint_info(address))["decimals"]
            except UpstreamError as e:
                logger.warning(f"Could not resolve decimals for {address}: {e.detail}")

        return TokenMetadata(
            name=str(base.get("name") or "Unknown"),
            symbol=str(base.get("symbol") or "???"),
            image=str(info.get("imageUrl") or ""),
            description="",
            decimals=decimals,
        )

    async def get_token_price(self, address: str) -> TokenPrice:
        validate_address_length(address, self.min_address_length, self.max_address_length)
        try:
            pairs = await self._fetch_pairs(address)
        except UpstreamError as e:
            if e.fallback_eligible:
                logger.warning(f"DexScreener {e.kind.value} for price of {address}; using fallback price")
                return TokenPrice.fallback()
            raise

        pair = self._select_best_pair(pairs, address) or {}
        price = pair.get("priceUsd")
        if price is None:
            raise UpstreamError(FailureKind.TRANSIENT, f"No price data found for token {address}", provider=self.provider)
        market_cap = pair.get("marketCap")
        if market_cap is None:
            market_cap = pair.get("fdv")
        return TokenPrice(
            price=price,
            price_change_24h=(pair.get("priceChange", {}) or {}).get("h24"),
            volume_24h=(pair.get("volume", {}) or {}).get("h24"),
            market_cap=market_cap,
            currency="USD",
        )
