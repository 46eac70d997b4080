from typing import Optional

NOT_AVAILABLE = "N/A"


def _to_float(value) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip() == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def shorten_address(address: str) -> str:
    if not address:
        return ""
    return f"{address[:6]}...{address[-4:]}"


def mask_api_key(key: str) -> str:
    """Audit-safe rendering of a credential: first 4 and last 4 characters only."""
    key = str(key or "")
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}...{key[-4:]}"


def format_price(value, decimals: int = 6) -> str:
    num = _to_float(value)
    if num is None:
        return NOT_AVAILABLE
    return f"{num:.{decimals}f}"


def format_percent(value, decimals: int = 2, signed: bool = False) -> str:
    num = _to_float(value)
    if num is None:
        return NOT_AVAILABLE
    if signed:
        return f"{num:+.{decimals}f}%"
    return f"{num:.{decimals}f}%"


def format_number(value, decimals: int = 2, abbreviate: bool = True) -> str:
    num = _to_float(value)
    if num is None:
        return NOT_AVAILABLE
    if abbreviate:
        magnitude = abs(num)
        if magnitude >= 1e9:
            return f"{num / 1e9:.{decimals}f}B"
        if magnitude >= 1e6:
            return f"{num / 1e6:.{decimals}f}M"
        if magnitude >= 1e3:
            return f"{num / 1e3:.{decimals}f}K"
    return f"{num:,.{decimals}f}"
