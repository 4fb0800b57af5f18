import itertools
import logging
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Handler = Callable[[str], None]


@dataclass(frozen=True)
class Subscription:
    id: int
    event: str


class EventChannel:
    """Best-effort named pub/sub between reply runs and one subscriber session.

    The same channel carries both directions: runs emit bot-reply events to
    the subscriber, and the subscriber emits stop-bot signals to the run.
    """

    def __init__(
        self, name: str, on_idle: Callable[["EventChannel"], None] | None = None
    ) -> None:
        self.name = name
        self._handlers: dict[str, dict[int, Handler]] = {}
        self._ids = itertools.count(1)
        self._on_idle = on_idle

    def emit(self, event: str, payload: str) -> bool:
        """Deliver payload to every handler of event. False if nobody received it."""
        handlers = list(self._handlers.get(event, {}).values())
        delivered = False
        for handler in handlers:
            try:
                handler(payload)
                delivered = True
            except Exception:
                logger.exception("Handler for %s on channel %s failed", event, self.name)
        return delivered

    def subscribe(self, event: str, handler: Handler) -> Subscription:
        sub = Subscription(next(self._ids), event)
        self._handlers.setdefault(event, {})[sub.id] = handler
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        handlers = self._handlers.get(sub.event)
        if handlers is None:
            return
        if handlers.pop(sub.id, None) is None:
            return
        if not handlers:
            del self._handlers[sub.event]
        if self.idle and self._on_idle is not None:
            self._on_idle(self)

    @contextmanager
    def subscribed(self, event: str, handler: Handler):
        """Subscribe for the duration of the block, releasing on every exit path."""
        sub = self.subscribe(event, handler)
        try:
            yield sub
        finally:
            self.unsubscribe(sub)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, {}))

    @property
    def idle(self) -> bool:
        return not self._handlers


class ChannelRegistry:
    """Channels keyed by subscriber session id.

    A channel is created on first use and dropped once its last subscriber
    leaves, so only sessions with a live stream or an active run are kept.
    """

    def __init__(self) -> None:
        self._channels: dict[str, EventChannel] = {}

    def get(self, session_id: str) -> EventChannel:
        channel = self._channels.get(session_id)
        if channel is None:
            channel = self._channels[session_id] = EventChannel(session_id, on_idle=self._drop)
        return channel

    def find(self, session_id: str) -> EventChannel | None:
        return self._channels.get(session_id)

    def discard_if_idle(self, session_id: str) -> None:
        channel = self._channels.get(session_id)
        if channel is not None and channel.idle:
            self._drop(channel)

    def _drop(self, channel: EventChannel) -> None:
        if self._channels.get(channel.name) is channel:
            del self._channels[channel.name]
            logger.debug("Dropped idle channel %s", channel.name)

    def __len__(self) -> int:
        return len(self._channels)
