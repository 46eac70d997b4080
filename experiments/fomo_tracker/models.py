import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

PLACEHOLDER_IMAGE = "https://placehold.co/64x64?text=%3F"
FALLBACK_PRICE_USD = 0.001
FALLBACK_DECIMALS = 9


def _to_float_or_none(value) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip() == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class TokenMetadata:
    name: str
    symbol: str
    image: str = ""
    description: str = ""
    decimals: Optional[int] = None
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "image": self.image,
            "description": self.description,
            "decimals": self.decimals,
            "isFallback": self.is_fallback,
        }

    @classmethod
    def fallback(cls, address: str) -> "TokenMetadata":
        return cls(
            name=f"Token {address[:6]}...{address[-4:]}",
            symbol="FALLBACK",
            image=PLACEHOLDER_IMAGE,
            description="",
            decimals=FALLBACK_DECIMALS,
            is_fallback=True,
        )


@dataclass
class TokenPrice:
    price: Optional[float]
    price_change_24h: Optional[float] = None
    volume_24h: Optional[float] = None
    market_cap: Optional[float] = None
    currency: str = "USD"
    is_fallback: bool = False

    def __post_init__(self):
        self.price = _to_float_or_none(self.price)
        self.price_change_24h = _to_float_or_none(self.price_change_24h)
        self.volume_24h = _to_float_or_none(self.volume_24h)
        self.market_cap = _to_float_or_none(self.market_cap)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "priceChange24h": self.price_change_24h,
            "volume24h": self.volume_24h,
            "marketCap": self.market_cap,
            "currency": self.currency,
            "isFallback": self.is_fallback,
        }

    @classmethod
    def fallback(cls) -> "TokenPrice":
        return cls(
            price=FALLBACK_PRICE_USD,
            price_change_24h=0.0,
            volume_24h=0.0,
            market_cap=0.0,
            currency="USD",
            is_fallback=True,
        )


@dataclass
class AlertThresholds:
    up: float = 5.0
    down: float = 5.0

    def to_dict(self) -> Dict[str, float]:
        return {"up": self.up, "down": self.down}

    @classmethod
    def from_value(cls, value) -> "AlertThresholds":
        if value is None:
            return cls()
        if isinstance(value, AlertThresholds):
            return value
        if isinstance(value, dict):
            return cls(up=float(value.get("up", 5.0)), down=float(value.get("down", 5.0)))
        raise TypeError(f"Unsupported thresholds value: {value!r}")


@dataclass
class TrackedToken:
    address: str
    metadata: TokenMetadata
    last_price: TokenPrice
    thresholds: AlertThresholds = field(default_factory=AlertThresholds)
    subscription: Any = None
    poll_task: Optional[asyncio.Task] = None
    added_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)

    @property
    def is_fallback(self) -> bool:
        return self.metadata.is_fallback and self.last_price.is_fallback

    @property
    def state(self) -> str:
        return "FALLBACK" if self.is_fallback else "LIVE"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "metadata": self.metadata.to_dict(),
            "price": self.last_price.to_dict(),
            "alertThresholds": self.thresholds.to_dict(),
            "subscribed": self.subscription is not None,
            "isFallback": self.is_fallback,
            "state": self.state,
            "addedAt": self.added_at,
            "lastUpdated": self.last_updated,
        }


@dataclass
class Alert:
    mint_address: str
    type: str
    change_percent: float
    old_price: float
    new_price: float
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def change(self) -> str:
        return f"{abs(self.change_percent):.2f}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mintAddress": self.mint_address,
            "type": self.type,
            "changePercent": self.change_percent,
            "change": self.change,
            "oldPrice": self.old_price,
            "newPrice": self.new_price,
            "timestamp": self.timestamp,
        }


@dataclass
class Transaction:
    mint_address: str
    type: str = "unknown"
    amount: Optional[float] = None
    sender: str = ""
    receiver: str = ""
    signature: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mintAddress": self.mint_address,
            "type": self.type,
            "amount": self.amount,
            "from": self.sender,
            "to": self.receiver,
            "signature": self.signature,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_notification(cls, mint_address: str, params: Any) -> "Transaction":
        """Best-effort parse of a push notification payload."""
        result = (params or {}).get("result", {}) if isinstance(params, dict) else {}
        value = result.get("value", result) if isinstance(result, dict) else {}
        if not isinstance(value, dict):
            value = {}
        # programNotification nests the account; accountNotification does not.
        account = value.get("account") if isinstance(value.get("account"), dict) else value
        account_data = account.get("data") or {}
        parsed = (account_data.get("parsed") if isinstance(account_data, dict) else None) or value.get("parsed") or {}
        if not isinstance(parsed, dict):
            parsed = {}
        info = parsed.get("info") or {}
        if not isinstance(info, dict):
            info = {}
        token_amount = info.get("tokenAmount") or {}
        amount = token_amount.get("uiAmount") if isinstance(token_amount, dict) else token_amount
        if amount is None:
            amount = value.get("amount")
        return cls(
            mint_address=mint_address,
            type=str(parsed.get("type") or value.get("type") or "account_update"),
            amount=_to_float_or_none(amount),
            sender=str(info.get("source") or value.get("from") or ""),
            receiver=str(info.get("owner") or info.get("destination") or value.get("to") or ""),
            signature=str(value.get("signature") or ""),
        )
