
import argparse
import asyncio
import logging
import os
import sys

from app_config import load_config
from formatters import format_number, format_price, shorten_address
from realtime_client import RealtimeClient

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logging.getLogger("websockets").setLevel(logging.WARNING)


def print_token_update(data):
    trend = {"up": "📈", "down": "📉"}.get(data.get("priceTrend"), "•")
    print(
        f"{trend} {data.get('symbol') or shorten_address(data.get('tokenId') or '')} "
        f"${format_price(data.get('price'))} | vol {format_number(data.get('volume24h'))} "
        f"| mcap {format_number(data.get('marketCap'))}"
    )


def print_alert(alert):
    arrow = "📈" if alert.get("type") == "increase" else "📉"
    print(f"🚨 {arrow} {shorten_address(alert.get('mintAddress', ''))} {alert.get('change')}% "
          f"(${alert.get('oldPrice')} -> ${alert.get('newPrice')})")


def print_transaction(tx):
    print(f"💸 {shorten_address(tx.get('mintAddress', ''))} {tx.get('type')} {tx.get('amount')}")


def print_status(status):
    tokens = status.get("tokens")
    suffix = f" ({len(tokens)} tokens)" if isinstance(tokens, list) else ""
    print(f"ℹ️  status: {status.get('status')}{suffix}")


def build_client(url: str, connector=None) -> RealtimeClient:
    client = RealtimeClient(url, connector=connector)
    client.bus.subscribe("tokenUpdate", print_token_update)
    client.bus.subscribe("alert", print_alert)
    client.bus.subscribe("transaction", print_transaction)
    client.bus.subscribe("status", print_status)
    client.on_disconnect(lambda: print("❌ Connection lost, reconnecting..."))
    return client


async def run(url: str, connector=None, poll_sec: float = 1.0):
    """Prints feed events until the client gives up reconnecting."""
    print(f"👂 Connecting to tracker feed: {url}")
    client = build_client(url, connector)
    await client.connect()
    try:
        while not client.fallback_mode:
            await asyncio.sleep(poll_sec)
    finally:
        await client.disconnect()
    print("🛑 Feed unavailable, giving up. Restart the monitor once the server is back.")


def main():
    parser = argparse.ArgumentParser(description="Console viewer for the FOMO tracker feed")
    parser.add_argument("--url", default=None, help="Feed URL, defaults to the local server from the config file")
    args = parser.parse_args()

    url = args.url
    if not url:
        config = load_config()
        url = f"ws://127.0.0.1:{config.get_int('PORT')}{config.get_string('WS_PATH')}"
    try:
        asyncio.run(run(url))
    except KeyboardInterrupt:
        print("\n🛑 Stopping...")
        return
    sys.exit(1)


if __name__ == "__main__":
    main()
