from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    AUTH_FAILURE = "auth_failure"
    RATE_LIMITED = "rate_limited"
    METHOD_NOT_FOUND = "method_not_found"
    INVALID_INPUT = "invalid_input"
    TRANSIENT = "transient"


# Failures that are answered with synthetic fallback data instead of an error.
FALLBACK_KINDS = {
    FailureKind.AUTH_FAILURE,
    FailureKind.RATE_LIMITED,
    FailureKind.METHOD_NOT_FOUND,
}


class UpstreamError(Exception):
    """Failure reported by an upstream provider, already classified by the client."""

    def __init__(self, kind: FailureKind, detail: str, status: Optional[int] = None, provider: str = ""):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        self.status = status
        self.provider = provider

    @property
    def fallback_eligible(self) -> bool:
        return self.kind in FALLBACK_KINDS

    def __repr__(self) -> str:
        return f"UpstreamError(kind={self.kind.value!r}, status={self.status!r}, detail={self.detail!r})"


class InvalidAddressFormat(UpstreamError):
    def __init__(self, address: str):
        super().__init__(FailureKind.INVALID_INPUT, f"Invalid Solana address format: {address}")
        self.address = address


class TokenNotTracked(KeyError):
    def __init__(self, address: str):
        super().__init__(address)
        self.address = address

    def __str__(self) -> str:
        return f"Token {self.address} is not tracked"


class ConfigError(Exception):
    pass


def is_fallback_error(error: BaseException) -> bool:
    return isinstance(error, UpstreamError) and error.fallback_eligible


def classify_failure(status: Optional[int] = None, message: str = "", code: Optional[int] = None) -> FailureKind:
    """
    Maps an HTTP status / provider error onto a FailureKind.

    Auth: HTTP 401, "invalid api key", or "401" anywhere in the message.
    Method not found: JSON-RPC -32601 or "method not found".
    Rate limit: HTTP 429.
    """
    text = str(message or "").lower()
    if status == 401 or "invalid api key" in text or "401" in text:
        return FailureKind.AUTH_FAILURE
    if code == -32601 or "method not found" in text:
        return FailureKind.METHOD_NOT_FOUND
    if status == 429:
        return FailureKind.RATE_LIMITED
    return FailureKind.TRANSIENT
