import asyncio
import inspect
import logging
import time
from collections import deque
from typing import Dict, List, Optional

from errors import TokenNotTracked, UpstreamError, is_fallback_error
from event_bus import EventBus
from formatters import NOT_AVAILABLE, format_number, format_percent, format_price
from models import Alert, AlertThresholds, TokenMetadata, TokenPrice, TrackedToken, Transaction

logger = logging.getLogger("TokenTracker")

# Event channels published by the tracker.
TOKEN_ADDED = "tokenAdded"
TOKEN_REMOVED = "tokenRemoved"
TOKEN_UPDATE = "tokenUpdate"
PRICE_ALERT = "priceAlert"
TRANSACTION = "transaction"


class TokenTracker:
    """
    Owns the tracked-token map and is its only writer.

    A token is LIVE (real metadata + price, maybe a push subscription and a
    poll task) or FALLBACK (synthetic records, no subscription, no polling).
    There is no FALLBACK -> LIVE transition; remove and re-add instead.
    """

    def __init__(
        self,
        metadata_client,
        price_client=None,
        bus: Optional[EventBus] = None,
        *,
        subscriber=None,
        poll_interval_sec: float = 60.0,
        max_alerts: int = 50,
        max_transactions: int = 100,
        default_thresholds: Optional[AlertThresholds] = None,
    ):
        self.metadata_client = metadata_client
        self.price_client = price_client or metadata_client
        # Source of push subscriptions; clients without one simply skip it.
        self.subscriber = subscriber if subscriber is not None else metadata_client
        self.bus = bus or EventBus()
        self.poll_interval_sec = poll_interval_sec
        self.default_thresholds = default_thresholds or AlertThresholds()
        self.paused = False
        self._tokens: Dict[str, TrackedToken] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._alerts = deque(maxlen=max_alerts)
        self._transactions = deque(maxlen=max_transactions)

    # ------------------------------------------------------------------
    # Tracking lifecycle
    # ------------------------------------------------------------------

    def is_tracked(self, address: str) -> bool:
        return address in self._tokens

    def _payload(self, token: TrackedToken) -> dict:
        return {
            "address": token.address,
            "metadata": token.metadata.to_dict(),
            "price": token.last_price.to_dict(),
        }

    async def _open_subscription(self, address: str):
        subscribe = getattr(self.subscriber, "subscribe_to_token_transactions", None)
        if subscribe is None:
            return None
        try:
            return await subscribe(address, lambda params: self.handle_transaction(address, params))
        except Exception as e:
            logger.warning(f"Subscription failed for {address}, tracking without push updates: {e}")
            return None

    async def _close_subscription(self, address: str, subscription):
        try:
            result = subscription.close()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Error closing subscription for {address}: {e}")

    def _forget_pending(self, address: str, task: asyncio.Future):
        if self._pending.get(address) is task:
            del self._pending[address]

    def _still_wanted(self, address: str) -> bool:
        # stop_tracking (or a newer add) drops the pending entry for this task.
        return self._pending.get(address) is asyncio.current_task()

    async def track_token(self, address: str, thresholds=None) -> dict:
        existing = self._tokens.get(address)
        if existing:
            return self._payload(existing)

        # Concurrent adds of one address share a single fetch + subscribe.
        pending = self._pending.get(address)
        if pending is None:
            pending = asyncio.ensure_future(self._add_token(address, thresholds))
            self._pending[address] = pending
            pending.add_done_callback(lambda task: self._forget_pending(address, task))
        return await asyncio.shield(pending)

    async def _add_token(self, address: str, thresholds) -> dict:
        thresholds = AlertThresholds.from_value(thresholds) if thresholds is not None else self.default_thresholds
        metadata, price = await asyncio.gather(
            self.metadata_client.get_token_metadata(address),
            self.price_client.get_token_price(address),
            return_exceptions=True,
        )

        errors = [r for r in (metadata, price) if isinstance(r, BaseException)]
        for err in errors:
            if isinstance(err, asyncio.CancelledError):
                raise err
        fatal = [e for e in errors if not is_fallback_error(e)]
        if fatal:
            logger.error(f"Error tracking token {address}: {fatal[0]}")
            raise fatal[0]

        use_fallback = bool(errors) or metadata.is_fallback or price.is_fallback
        if use_fallback:
            logger.warning(f"Using fallback data for {address}")
            metadata = TokenMetadata.fallback(address)
            price = TokenPrice.fallback()

        if not self._still_wanted(address):
            logger.info(f"Tracking of {address} was stopped before it completed")
            raise TokenNotTracked(address)

        subscription = None
        if not metadata.is_fallback:
            subscription = await self._open_subscription(address)
            if not self._still_wanted(address):
                if subscription is not None:
                    await self._close_subscription(address, subscription)
                logger.info(f"Tracking of {address} was stopped before it completed")
                raise TokenNotTracked(address)

        token = TrackedToken(
            address=address,
            metadata=metadata,
            last_price=price,
            thresholds=thresholds,
            subscription=subscription,
        )
        self._tokens[address] = token
        if not token.is_fallback:
            token.poll_task = asyncio.create_task(self._poll_loop(token))

        payload = self._payload(token)
        logger.info(f"Started tracking {metadata.name} ({address}) [{token.state}]")
        await self.bus.publish(TOKEN_ADDED, payload)
        return payload

    async def stop_tracking(self, address: str) -> bool:
        pending = self._pending.pop(address, None)
        token = self._tokens.pop(address, None)
        if token is None:
            if pending is not None:
                logger.info(f"Stopped pending add of {address}")
                return True
            return False

        if token.poll_task and not token.poll_task.done():
            token.poll_task.cancel()
        token.poll_task = None

        if token.subscription is not None:
            await self._close_subscription(address, token.subscription)
            token.subscription = None

        logger.info(f"Stopped tracking {address}")
        await self.bus.publish(TOKEN_REMOVED, {"address": address})
        return True

    async def shutdown(self):
        for address in set(self._tokens) | set(self._pending):
            await self.stop_tracking(address)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_snapshot(self, address: str) -> dict:
        token = self._tokens.get(address)
        if token is None:
            raise TokenNotTracked(address)
        return token.to_dict()

    async def get_token_data(self, address: str) -> dict:
        token = self._tokens.get(address)
        if token is None:
            raise TokenNotTracked(address)
        if token.is_fallback:
            return token.to_dict()

        try:
            price = await self.price_client.get_token_price(address)
        except Exception as e:
            logger.warning(f"Price refresh failed for {address}, returning last snapshot: {e}")
            return token.to_dict()

        if self._tokens.get(address) is token and not price.is_fallback:
            token.last_price = price
            token.last_updated = time.time()
        return token.to_dict()

    def get_tracked_tokens(self) -> List[dict]:
        rows = []
        for address, token in self._tokens.items():
            price = token.last_price
            rows.append({
                "address": address,
                "name": token.metadata.name,
                "symbol": token.metadata.symbol or NOT_AVAILABLE,
                "price": format_price(price.price),
                "priceChange24h": format_percent(price.price_change_24h),
                "volume24h": format_number(price.volume_24h),
                "marketCap": format_number(price.market_cap),
                "isFallback": token.is_fallback,
                "subscribed": token.subscription is not None,
            })
        return rows

    def get_recent_alerts(self, limit: Optional[int] = None) -> List[dict]:
        alerts = [a.to_dict() for a in reversed(self._alerts)]
        return alerts[:limit] if limit and limit > 0 else alerts

    def get_recent_transactions(self, limit: Optional[int] = None) -> List[dict]:
        txs = [t.to_dict() for t in reversed(self._transactions)]
        return txs[:limit] if limit and limit > 0 else txs

    # ------------------------------------------------------------------
    # Price monitoring
    # ------------------------------------------------------------------

    def _evaluate_alert(self, token: TrackedToken, old_price: Optional[float], new_price: Optional[float]) -> Optional[Alert]:
        # Only meaningful against a positive previous price.
        if old_price is None or new_price is None or old_price <= 0:
            return None
        change_pct = (new_price - old_price) / old_price * 100.0
        if change_pct > 0 and abs(change_pct) >= token.thresholds.up:
            alert_type = "increase"
        elif change_pct < 0 and abs(change_pct) >= token.thresholds.down:
            alert_type = "decrease"
        else:
            return None
        return Alert(
            mint_address=token.address,
            type=alert_type,
            change_percent=change_pct,
            old_price=old_price,
            new_price=new_price,
        )

    async def check_price(self, address: str) -> Optional[Alert]:
        """One poll tick: refresh the price, alert on threshold crossings, store."""
        token = self._tokens.get(address)
        if token is None or token.is_fallback:
            return None

        try:
            new_price = await self.price_client.get_token_price(address)
        except UpstreamError as e:
            logger.error(f"Error monitoring price for {address}: {e.detail}")
            return None
        except Exception as e:
            logger.error(f"Error monitoring price for {address}: {e}")
            return None

        if self._tokens.get(address) is not token:
            logger.debug(f"{address} was removed during a price check; discarding result")
            return None
        if new_price.is_fallback:
            logger.warning(f"Ignoring fallback price for live token {address}")
            return None

        alert = self._evaluate_alert(token, token.last_price.price, new_price.price)
        token.last_price = new_price
        token.last_updated = time.time()

        if alert:
            self._alerts.append(alert)
            logger.info(
                f"Price alert for {address}: {alert.type} {alert.change}% "
                f"({alert.old_price} -> {alert.new_price})"
            )
            await self.bus.publish(PRICE_ALERT, alert.to_dict())
        await self.bus.publish(TOKEN_UPDATE, token.to_dict())
        return alert

    async def _poll_loop(self, token: TrackedToken):
        # Fixed cadence, skip-if-in-flight: each tick is awaited before the
        # next deadline is computed, so a fetch that outlasts the interval
        # swallows the ticks it overlapped instead of running them in parallel.
        interval = max(0.0, float(self.poll_interval_sec))
        next_tick = time.monotonic() + interval
        while self._tokens.get(token.address) is token:
            await asyncio.sleep(max(0.0, next_tick - time.monotonic()))
            if self._tokens.get(token.address) is not token:
                return
            if not self.paused:
                await self.check_price(token.address)
            next_tick += interval
            now = time.monotonic()
            if interval > 0 and next_tick < now:
                skipped = int((now - next_tick) // interval) + 1
                logger.debug(f"Skipped {skipped} poll tick(s) for {token.address}")
                next_tick += skipped * interval

    def pause(self):
        self.paused = True

    def resume(self):
        self.paused = False

    # ------------------------------------------------------------------
    # Push events
    # ------------------------------------------------------------------

    async def handle_transaction(self, address: str, params) -> Optional[Transaction]:
        token = self._tokens.get(address)
        if token is None:
            return None
        tx = Transaction.from_notification(address, params)
        self._transactions.append(tx)
        token.last_updated = time.time()
        await self.bus.publish(TRANSACTION, tx.to_dict())
        return tx
