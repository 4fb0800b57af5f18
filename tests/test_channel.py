from relay_chat.bot.events import ReplyEvent
from relay_chat.channel import ChannelRegistry, EventChannel


def test_emit_without_subscribers_fails():
    channel = EventChannel("s")
    assert channel.emit("bot-reply", "x") is False


def test_subscribe_and_unsubscribe():
    channel = EventChannel("s")
    got = []
    sub = channel.subscribe("bot-reply", got.append)

    assert channel.emit("bot-reply", "a") is True
    assert channel.emit("bot-reply", "b") is True
    assert channel.emit("stop-bot", "") is False
    assert got == ["a", "b"]

    channel.unsubscribe(sub)
    channel.unsubscribe(sub)
    assert channel.listener_count("bot-reply") == 0
    assert channel.emit("bot-reply", "c") is False
    assert got == ["a", "b"]


def test_failing_handler_counts_as_not_delivered():
    channel = EventChannel("s")

    def broken(payload):
        raise RuntimeError("subscriber went away")

    channel.subscribe("bot-reply", broken)
    assert channel.emit("bot-reply", "x") is False

    got = []
    channel.subscribe("bot-reply", got.append)
    assert channel.emit("bot-reply", "y") is True
    assert got == ["y"]


def test_subscribed_releases_on_error():
    channel = EventChannel("s")
    try:
        with channel.subscribed("stop-bot", lambda payload: None):
            assert channel.listener_count("stop-bot") == 1
            raise ValueError("boom")
    except ValueError:
        pass
    assert channel.listener_count("stop-bot") == 0


def test_registry_reuses_channels():
    registry = ChannelRegistry()
    assert registry.get("a") is registry.get("a")
    assert registry.get("a") is not registry.get("b")


def test_registry_drops_channel_after_last_subscriber():
    registry = ChannelRegistry()
    channel = registry.get("a")
    first = channel.subscribe("bot-reply", lambda p: None)
    second = channel.subscribe("stop-bot", lambda p: None)

    channel.unsubscribe(first)
    assert registry.find("a") is channel
    channel.unsubscribe(second)
    assert registry.find("a") is None
    assert len(registry) == 0

    # A stale channel going idle again must not evict its replacement.
    replacement = registry.get("a")
    channel.unsubscribe(channel.subscribe("bot-reply", lambda p: None))
    assert registry.find("a") is replacement


def test_registry_discards_unused_channel():
    registry = ChannelRegistry()
    registry.get("a")
    with registry.get("b").subscribed("bot-reply", lambda p: None):
        registry.discard_if_idle("a")
        registry.discard_if_idle("b")
        assert registry.find("a") is None
        assert registry.find("b") is not None
    assert len(registry) == 0


def test_reply_event_payloads():
    assert ReplyEvent.start().payload == "[[START]]"
    assert ReplyEvent.chunk("hello").payload == "hello"
    assert ReplyEvent.done().payload == "[[DONE]]"
    assert ReplyEvent.error("timeout").payload == "[[ERROR]]timeout"
    assert ReplyEvent.stopped().payload == "[[STOPPED]]"


def test_reply_event_from_payload():
    assert ReplyEvent.from_payload("[[ERROR]]timeout") == ReplyEvent.error("timeout")
    assert ReplyEvent.from_payload("[[START]]") == ReplyEvent.start()
    assert ReplyEvent.from_payload("plain text") == ReplyEvent.chunk("plain text")

    events = [ReplyEvent.from_payload(p) for p in ["[[START]]", "partial"]]
    assert not any(e.is_terminal for e in events)
    assert ReplyEvent.from_payload("[[DONE]]").is_terminal
