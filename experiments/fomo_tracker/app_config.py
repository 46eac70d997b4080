import logging
import os
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values, load_dotenv

from errors import ConfigError

logger = logging.getLogger("Config")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_CONFIG_FILE = os.path.join(BASE_DIR, "tracker.config")

REQUIRED_KEYS = (
    "PORT",
    "ADMIN_TOKEN",
    "HELIUS_RPC_URL",
    "HELIUS_WEBSOCKET_URL",
    "DEXSCREENER_BASE_URL",
    "SOLANA_RPC_URL",
    "JSONRPC_VERSION",
    "WS_COMMITMENT",
    "WS_ENCODING",
    "DEFAULT_REQUEST_ID",
    "HELIUS_METADATA_METHOD",
    "HELIUS_PRICE_METHOD",
    "HELIUS_SUBSCRIBE_METHOD",
    "HELIUS_NOTIFICATION_METHOD",
    "MIN_ADDRESS_LENGTH",
    "MAX_ADDRESS_LENGTH",
    "WS_PATH",
    "PRICE_POLL_INTERVAL_SEC",
    "TOKEN_DATA_PROVIDER",
    "CLIENT_LOG_FILE",
)


class Config:
    """
    Flat key=value configuration with fail-fast typed getters.

    Lines starting with '#' and blank lines are ignored. A key that is
    missing (or has an empty value) raises ConfigError on lookup instead of
    silently defaulting.
    """

    def __init__(self, values: Mapping[str, str], source: str = "<memory>"):
        self.source = source
        self._values: Dict[str, str] = {
            str(k).strip(): str(v).strip()
            for k, v in dict(values).items()
            if k and v is not None and str(v).strip() != ""
        }

    @classmethod
    def from_file(cls, path: str) -> "Config":
        if not os.path.exists(path):
            raise ConfigError(f"Config file not found: {path}")
        values = dotenv_values(path)
        logger.info(f"Loaded {len(values)} config keys from {path}")
        return cls(values, source=path)

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> "Config":
        return cls({k: str(v) for k, v in values.items()})

    def has(self, key: str) -> bool:
        return key in self._values

    def _raw(self, key: str) -> str:
        try:
            return self._values[key]
        except KeyError:
            raise ConfigError(f"Config key not found: {key}") from None

    def get_string(self, key: str) -> str:
        return self._raw(key)

    def get_number(self, key: str) -> float:
        raw = self._raw(key)
        try:
            return float(raw)
        except ValueError:
            raise ConfigError(f"Config key {key} is not a number: {raw!r}") from None

    def get_int(self, key: str) -> int:
        value = self.get_number(key)
        if int(value) != value:
            raise ConfigError(f"Config key {key} is not an integer: {value!r}")
        return int(value)

    def get_boolean(self, key: str) -> bool:
        return self._raw(key).lower() == "true"

    def require(self, keys=REQUIRED_KEYS) -> "Config":
        missing = [k for k in keys if k not in self._values]
        if missing:
            raise ConfigError(f"Required config value(s) missing from {self.source}: {', '.join(missing)}")
        return self


def load_config(path: Optional[str] = None) -> Config:
    """Loads .env, then the tracker config file, and validates required keys."""
    load_dotenv()
    path = path or os.getenv("TRACKER_CONFIG_FILE", DEFAULT_CONFIG_FILE)
    return Config.from_file(path).require()


def get_helius_api_key() -> str:
    key = os.getenv("HELIUS_API_KEY", "").strip()
    if not key:
        raise ConfigError("HELIUS_API_KEY is not set in environment variables")
    return key
