"""
Per-path notification channels.

Gateways publish ReadData notifications on a channel named after the port
path; sessions subscribe to that channel to receive data. The bus is
thread-safe: reader threads emit, asyncio subscribers receive on their own
event loop via call_soon_threadsafe, so per-channel emission order is kept.

Example:
    >>> bus = EventBus()
    >>> sub = bus.subscribe(read_event_name("COM3"), print)
    >>> bus.emit(read_event_name("COM3"), ReadData(data=b"Hi", size=2))
    >>> sub.cancel()
"""

import asyncio
import base64
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

READ_EVENT_PREFIX = "serialport-read-"


def read_event_name(path: str) -> str:
    """Channel name for data notifications of one port path."""
    return f"{READ_EVENT_PREFIX}{path}"


@dataclass
class ReadData:
    """A chunk of bytes read from a port.

    Attributes:
        data: Bytes received
        size: Number of bytes the gateway reports as read
    """

    data: bytes
    size: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (data is base64)."""
        return {"size": self.size, "data": base64.b64encode(self.data).decode("ascii")}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReadData":
        """Create ReadData from dictionary."""
        raw = base64.b64decode(data.get("data", ""))
        return cls(data=raw, size=data.get("size", len(raw)))


NotificationCallback = Callable[[ReadData], None]


class Subscription:
    """A cancellable registration on one channel.

    Cancelling is idempotent. A notification that arrives after cancel()
    has been called is dropped.
    """

    def __init__(
        self,
        channel: str,
        callback: NotificationCallback,
        loop: asyncio.AbstractEventLoop | None = None,
        on_cancel: Callable[["Subscription"], None] | None = None,
    ):
        self.channel = channel
        self._callback = callback
        self._loop = loop
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        """Stop receiving notifications."""
        if not self._active:
            return
        self._active = False
        if self._on_cancel is not None:
            on_cancel = self._on_cancel
            self._on_cancel = None
            on_cancel(self)

    def deliver(self, payload: ReadData) -> None:
        """Hand a notification to the subscriber, on its loop if it has one."""
        if not self._active:
            return
        if self._loop is None:
            self._dispatch(payload)
            return
        try:
            self._loop.call_soon_threadsafe(self._dispatch, payload)
        except RuntimeError:
            # Loop already closed
            logger.debug(f"Dropping notification on {self.channel}: subscriber loop is closed")

    def _dispatch(self, payload: ReadData) -> None:
        if not self._active:
            return
        try:
            self._callback(payload)
        except KeyboardInterrupt:  # noqa: KBI002
            raise
        except Exception as e:
            logger.error(f"Error in notification callback for {self.channel}: {e}", exc_info=True)


class EventBus:
    """Thread-safe registry of channel subscriptions.

    Args:
        on_channel_empty: Called with the channel name when its last
            subscription is cancelled
    """

    def __init__(self, on_channel_empty: Callable[[str], None] | None = None):
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._on_channel_empty = on_channel_empty

    def subscribe(self, channel: str, callback: NotificationCallback) -> Subscription:
        """Register callback on channel.

        If called from a running event loop, notifications are delivered on
        that loop; otherwise they are delivered on the emitting thread.
        """
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        subscription = Subscription(channel, callback, loop=loop, on_cancel=self._remove)
        with self._lock:
            self._subscriptions.setdefault(channel, []).append(subscription)
        logger.debug(f"Subscribed to {channel}")
        return subscription

    def emit(self, channel: str, payload: ReadData) -> int:
        """Deliver payload to every active subscription on channel.

        Returns:
            Number of subscriptions the payload was handed to
        """
        with self._lock:
            targets = list(self._subscriptions.get(channel, ()))
        for subscription in targets:
            subscription.deliver(payload)
        return len(targets)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(channel, ()))

    def channels(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)

    def _remove(self, subscription: Subscription) -> None:
        emptied = False
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.channel)
            if not subscriptions:
                return
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.channel]
                emptied = True
        logger.debug(f"Unsubscribed from {subscription.channel}")
        if emptied and self._on_channel_empty is not None:
            self._on_channel_empty(subscription.channel)
