import inspect
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger("EventBus")

ADDRESS_CHANNEL_PREFIXES = ("account:", "program:")


def is_address_channel(channel: str) -> bool:
    return channel.startswith(ADDRESS_CHANNEL_PREFIXES)


def split_address_channel(channel: str):
    """'account:<addr>' -> ('account', '<addr>')"""
    kind, _, address = channel.partition(":")
    return kind, address


class EventBus:
    """
    Publish/subscribe registry keyed by channel name.

    Callbacks run in registration order. A callback may be sync or async; an
    exception raised by one is logged and does not stop delivery to the rest.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable]] = {}

    def subscribe(self, channel: str, callback: Callable) -> Callable:
        callbacks = self._subscribers.setdefault(channel, [])
        if callback not in callbacks:
            callbacks.append(callback)
        return callback

    def unsubscribe(self, channel: str, callback: Callable) -> bool:
        callbacks = self._subscribers.get(channel)
        if not callbacks or callback not in callbacks:
            return False
        callbacks.remove(callback)
        if not callbacks:
            del self._subscribers[channel]
        return True

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def channels(self) -> List[str]:
        return list(self._subscribers)

    async def publish(self, channel: str, data: Any = None) -> int:
        """Delivers data to every callback of channel; returns how many succeeded."""
        delivered = 0
        for callback in list(self._subscribers.get(channel, ())):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception(f"Error in subscriber callback for {channel}")
        return delivered

    def clear(self):
        self._subscribers.clear()
