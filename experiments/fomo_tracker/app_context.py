import logging
import os
import time
from typing import Optional

from app_config import BASE_DIR, Config, get_helius_api_key, load_config
from client_log import ClientLog
from dexscreener_client import DexScreenerClient
from errors import ConfigError
from event_bus import EventBus
from helius_client import HeliusClient, with_api_key
from solana_relay import SolanaSubscriptionRelay
from solana_rpc import SolanaRpcClient
from token_tracker import TokenTracker

logger = logging.getLogger("AppContext")

PROVIDERS = ("helius", "dexscreener")


class AppContext:
    """Every long-lived service of the app, built once and passed around explicitly."""

    def __init__(
        self,
        config: Config,
        tracker: TokenTracker,
        helius: HeliusClient,
        *,
        bus: Optional[EventBus] = None,
        relay: Optional[SolanaSubscriptionRelay] = None,
        rpc: Optional[SolanaRpcClient] = None,
        client_log: Optional[ClientLog] = None,
    ):
        self.config = config
        self.tracker = tracker
        self.helius = helius
        self.bus = bus or tracker.bus
        self.relay = relay
        self.rpc = rpc
        self.client_log = client_log
        self.started_at = time.time()

    @property
    def admin_token(self) -> str:
        return self.config.get_string("ADMIN_TOKEN")

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    @classmethod
    def build(cls, config: Optional[Config] = None, api_key: Optional[str] = None) -> "AppContext":
        config = config or load_config()
        api_key = api_key or get_helius_api_key()

        provider = config.get_string("TOKEN_DATA_PROVIDER").lower()
        if provider not in PROVIDERS:
            raise ConfigError(f"TOKEN_DATA_PROVIDER must be one of {', '.join(PROVIDERS)}, got {provider!r}")

        bus = EventBus()
        rpc = SolanaRpcClient(config.get_string("SOLANA_RPC_URL"), commitment=config.get_string("WS_COMMITMENT"))
        helius = HeliusClient.from_config(config, api_key)
        data_client = helius if provider == "helius" else DexScreenerClient.from_config(config, rpc=rpc)

        tracker = TokenTracker(
            data_client,
            data_client,
            bus,
            subscriber=helius,
            poll_interval_sec=config.get_number("PRICE_POLL_INTERVAL_SEC"),
        )
        relay = SolanaSubscriptionRelay(
            with_api_key(config.get_string("HELIUS_WEBSOCKET_URL"), api_key),
            bus,
            jsonrpc_version=config.get_string("JSONRPC_VERSION"),
            request_id=config.get_int("DEFAULT_REQUEST_ID"),
            commitment=config.get_string("WS_COMMITMENT"),
            encoding=config.get_string("WS_ENCODING"),
        )

        log_path = config.get_string("CLIENT_LOG_FILE")
        if not os.path.isabs(log_path):
            log_path = os.path.join(BASE_DIR, log_path)

        logger.info(f"Token data provider: {provider}")
        return cls(config, tracker, helius, bus=bus, relay=relay, rpc=rpc, client_log=ClientLog(log_path))

    async def close(self):
        await self.tracker.shutdown()
        if self.relay is not None:
            await self.relay.close()
        if self.rpc is not None:
            try:
                await self.rpc.close()
            except Exception as e:
                logger.warning(f"Error closing Solana RPC client: {e}")
