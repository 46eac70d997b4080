import asyncio
import logging
import os

from app_context import AppContext
from formatters import format_price, shorten_address

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "WARNING").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

TOKENS_TO_TRACK = [
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",  # USDC
    "So11111111111111111111111111111111111111112",   # Wrapped SOL
]
LAUNCH_THRESHOLDS = {"up": 2, "down": 2}


def on_token_added(data):
    print(f"Started tracking {data['metadata']['name']} ({data['address']})")
    print(f"Current price: ${format_price(data['price']['price'])}")


def on_price_alert(alert):
    arrow = "📈" if alert["type"] == "increase" else "📉"
    print(f"🚨 Price Alert for {alert['mintAddress']}:")
    print(f"{arrow} {alert['change']}% change")
    print(f"Old price: ${alert['oldPrice']}")
    print(f"New price: ${alert['newPrice']}")


def on_transaction(tx):
    print(f"New transaction on {shorten_address(tx['mintAddress'])}: {tx['type']} {tx['amount']} ({tx['signature'] or 'no signature'})")


def on_token_removed(data):
    print(f"Stopped tracking {data['address']}")


async def run(context: AppContext, tokens=TOKENS_TO_TRACK, thresholds=LAUNCH_THRESHOLDS):
    bus = context.bus
    bus.subscribe("tokenAdded", on_token_added)
    bus.subscribe("priceAlert", on_price_alert)
    bus.subscribe("transaction", on_transaction)
    bus.subscribe("tokenRemoved", on_token_removed)

    print("🤖 Starting FOMO token tracker...")
    tracker = context.tracker
    try:
        for address in tokens:
            await tracker.track_token(address, thresholds)
    except Exception as e:
        print(f"❌ Error starting tracker: {e}")
        raise
    print("✅ Tracker started successfully!")
    print(f"📊 Currently tracking: {len(tracker.get_tracked_tokens())} tokens")

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        print("\n🛑 Shutting down tracker...")
        await context.close()


def main():
    context = AppContext.build()
    try:
        asyncio.run(run(context))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
