import asyncio
import inspect
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import aiohttp
import websockets

from errors import FailureKind, UpstreamError, classify_failure
from formatters import mask_api_key
from models import TokenMetadata, TokenPrice
from solana_rpc import validate_address_length

logger = logging.getLogger("HeliusAPI")

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def with_api_key(url: str, api_key: str) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}api-key={api_key}"


class TransactionSubscription:
    """Handle for one live push channel. close() stops the reader and the socket."""

    def __init__(self, address: str, websocket, reader_task: asyncio.Task):
        self.address = address
        self.websocket = websocket
        self.reader_task = reader_task
        self.closed = False

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self.reader_task and not self.reader_task.done():
            self.reader_task.cancel()
        try:
            await self.websocket.close()
        except Exception as e:
            logger.warning(f"Error closing subscription socket for {self.address}: {e}")


class HeliusClient:
    """
    Helius JSON-RPC / websocket client.

    Metadata and price both come from the DAS asset lookup (method names are
    configurable). Auth failures on metadata, and auth or unsupported-method
    failures on price, are answered with fallback records so the dashboard
    keeps working with a misconfigured key. Everything else raises
    UpstreamError.
    """

    provider = "helius"

    def __init__(
        self,
        api_key: str,
        rpc_url: str,
        ws_url: str,
        *,
        jsonrpc_version: str = "2.0",
        request_id: int = 1,
        commitment: str = "confirmed",
        encoding: str = "jsonParsed",
        metadata_method: str = "getAsset",
        price_method: str = "getAsset",
        subscribe_method: str = "accountSubscribe",
        notification_method: str = "accountNotification",
        min_address_length: int = 32,
        max_address_length: int = 44,
        cache_ttl_sec: float = 30.0,
        request_timeout_sec: float = 10.0,
        reference_address: str = USDC_MINT,
        ws_connect: Optional[Callable] = None,
    ):
        self.api_key = api_key
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self.jsonrpc_version = jsonrpc_version
        self.request_id = request_id
        self.commitment = commitment
        self.encoding = encoding
        self.metadata_method = metadata_method
        self.price_method = price_method
        self.subscribe_method = subscribe_method
        self.notification_method = notification_method
        self.min_address_length = min_address_length
        self.max_address_length = max_address_length
        self.cache_ttl_sec = cache_ttl_sec
        self.request_timeout_sec = request_timeout_sec
        self.reference_address = reference_address
        self._ws_connect = ws_connect or websockets.connect
        self._metadata_cache: Dict[str, dict] = {}

    @classmethod
    def from_config(cls, config, api_key: str, **kwargs) -> "HeliusClient":
        return cls(
            api_key,
            config.get_string("HELIUS_RPC_URL"),
            config.get_string("HELIUS_WEBSOCKET_URL"),
            jsonrpc_version=config.get_string("JSONRPC_VERSION"),
            request_id=config.get_int("DEFAULT_REQUEST_ID"),
            commitment=config.get_string("WS_COMMITMENT"),
            encoding=config.get_string("WS_ENCODING"),
            metadata_method=config.get_string("HELIUS_METADATA_METHOD"),
            price_method=config.get_string("HELIUS_PRICE_METHOD"),
            subscribe_method=config.get_string("HELIUS_SUBSCRIBE_METHOD"),
            notification_method=config.get_string("HELIUS_NOTIFICATION_METHOD"),
            min_address_length=config.get_int("MIN_ADDRESS_LENGTH"),
            max_address_length=config.get_int("MAX_ADDRESS_LENGTH"),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post_json(self, payload: dict):
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_sec)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.rpc_url, params={"api-key": self.api_key}, json=payload) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = {"error": {"message": await resp.text()}}
                return resp.status, data

    async def _rpc(self, method: str, params: Any):
        payload = {
            "jsonrpc": self.jsonrpc_version,
            "id": self.request_id,
            "method": method,
            "params": params,
        }
        try:
            status, data = await self._post_json(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(FailureKind.TRANSIENT, f"Helius {method} request failed: {e}", provider=self.provider) from e

        error = data.get("error") if isinstance(data, dict) else None
        if status != 200 or error:
            if isinstance(error, dict):
                message = str(error.get("message", ""))
                code = error.get("code")
            else:
                message = str(error or data or "")
                code = None
            kind = classify_failure(status, message, code)
            raise UpstreamError(kind, f"Helius {method} failed ({status}): {message}", status=status, provider=self.provider)
        return data.get("result") if isinstance(data, dict) else None

    # ------------------------------------------------------------------
    # Metadata / price
    # ------------------------------------------------------------------

    def _cached_metadata(self, address: str) -> Optional[TokenMetadata]:
        cached = self._metadata_cache.get(address)
        if not cached:
            return None
        if time.time() - cached["ts"] > self.cache_ttl_sec:
            self._metadata_cache.pop(address, None)
            return None
        return cached["data"]

    @staticmethod
    def _parse_metadata(asset: dict) -> TokenMetadata:
        content = asset.get("content") or {}
        md = content.get("metadata") or {}
        links = content.get("links") or {}
        token_info = asset.get("token_info") or {}
        files = content.get("files") or []
        image = links.get("image") or (files[0].get("uri", "") if files and isinstance(files[0], dict) else "")
        decimals = token_info.get("decimals")
        return TokenMetadata(
            name=str(md.get("name") or token_info.get("symbol") or "Unknown"),
            symbol=str(md.get("symbol") or token_info.get("symbol") or "???"),
            image=str(image or ""),
            description=str(md.get("description") or ""),
            decimals=int(decimals) if decimals is not None else None,
        )

    async def get_token_metadata(self, address: str) -> TokenMetadata:
        cached = self._cached_metadata(address)
        if cached:
            return cached

        try:
            result = await self._rpc(self.metadata_method, {"id": address, "displayOptions": {"showFungible": True}})
        except UpstreamError as e:
            if e.kind == FailureKind.AUTH_FAILURE:
                logger.warning(f"Helius auth failure for metadata of {address}; using fallback metadata")
                return TokenMetadata.fallback(address)
            logger.error(f"Error fetching token metadata for {address}: {e.detail}")
            raise

        if not result:
            raise UpstreamError(FailureKind.TRANSIENT, f"No metadata found for token {address}", provider=self.provider)

        metadata = self._parse_metadata(result)
        self._metadata_cache[address] = {"ts": time.time(), "data": metadata}
        return metadata

    async def get_token_price(self, address: str) -> TokenPrice:
        validate_address_length(address, self.min_address_length, self.max_address_length)

        try:
            result = await self._rpc(self.price_method, {"id": address, "displayOptions": {"showFungible": True}})
        except UpstreamError as e:
            if e.kind in (FailureKind.AUTH_FAILURE, FailureKind.METHOD_NOT_FOUND):
                logger.warning(f"Helius {e.kind.value} for price of {address}; using fallback price")
                return TokenPrice.fallback()
            logger.error(f"Error fetching token price for {address}: {e.detail}")
            raise

        token_info = (result or {}).get("token_info") or {}
        price_info = token_info.get("price_info") or {}
        price = price_info.get("price_per_token")
        if price is None:
            raise UpstreamError(FailureKind.TRANSIENT, f"No price data found for token {address}", provider=self.provider)

        market_cap = None
        supply = token_info.get("supply")
        decimals = token_info.get("decimals")
        try:
            if supply is not None and decimals is not None:
                market_cap = float(price) * float(supply) / (10 ** int(decimals))
        except (TypeError, ValueError):
            market_cap = None

        return TokenPrice(
            price=price,
            market_cap=market_cap,
            currency=str(price_info.get("currency") or "USD"),
        )

    # ------------------------------------------------------------------
    # Push subscription
    # ------------------------------------------------------------------

    async def _read_notifications(self, address: str, websocket, callback: Callable):
        try:
            async for raw in websocket:
                try:
                    msg = json.loads(raw)
                except (TypeError, ValueError) as e:
                    logger.error(f"Error processing websocket message for {address}: {e}")
                    continue
                if not isinstance(msg, dict) or msg.get("method") != self.notification_method:
                    continue
                try:
                    result = callback(msg.get("params"))
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception(f"Transaction callback failed for {address}")
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Subscription socket for {address} closed: {e}")
        finally:
            logger.info(f"Transaction subscription for {address} ended")

    async def subscribe_to_token_transactions(self, address: str, callback: Callable) -> TransactionSubscription:
        url = with_api_key(self.ws_url, self.api_key)
        try:
            websocket = await asyncio.wait_for(self._ws_connect(url), timeout=self.request_timeout_sec)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise UpstreamError(FailureKind.TRANSIENT, f"Subscription open failed for {address}: {e}", provider=self.provider) from e

        request = {
            "jsonrpc": self.jsonrpc_version,
            "id": self.request_id,
            "method": self.subscribe_method,
            "params": [address, {"encoding": self.encoding, "commitment": self.commitment}],
        }
        try:
            await websocket.send(json.dumps(request))
        except Exception:
            await websocket.close()
            raise

        reader = asyncio.create_task(self._read_notifications(address, websocket, callback))
        logger.info(f"Subscribed to {self.subscribe_method} for {address}")
        return TransactionSubscription(address, websocket, reader)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def update_api_key(self, new_key: str) -> dict:
        if not isinstance(new_key, str) or not new_key.strip():
            raise ValueError("API key must be a non-empty string")
        old_key = self.api_key
        self.api_key = new_key.strip()
        self._metadata_cache.clear()
        logger.info(f"[AUDIT] Helius API key updated: {mask_api_key(old_key)} -> {mask_api_key(self.api_key)}")
        return {"success": True, "message": "API key updated successfully"}

    async def test_api_key(self) -> dict:
        try:
            await self._rpc(self.metadata_method, {"id": self.reference_address})
        except UpstreamError as e:
            if e.kind == FailureKind.AUTH_FAILURE:
                return {"valid": False, "message": "API key is invalid or unauthorized"}
            return {"valid": False, "message": f"API key test failed: {e.detail}"}
        except Exception as e:
            return {"valid": False, "message": f"API key test failed: {e}"}
        return {"valid": True, "message": "API key is valid"}
