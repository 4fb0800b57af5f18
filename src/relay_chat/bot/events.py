from dataclasses import dataclass

BOT_REPLY_EVENT = "bot-reply"
STOP_BOT_EVENT = "stop-bot"

STREAM_START = "[[START]]"
STREAM_DONE = "[[DONE]]"
STREAM_ERROR = "[[ERROR]]"
STREAM_STOPPED = "[[STOPPED]]"


@dataclass(frozen=True)
class ReplyEvent:
    """One framed step of a bot reply as carried on the bot-reply event."""

    type: str  # "start", "chunk", "done", "error", "stopped"
    text: str = ""

    @classmethod
    def start(cls) -> "ReplyEvent":
        return cls("start")

    @classmethod
    def chunk(cls, text: str) -> "ReplyEvent":
        return cls("chunk", text)

    @classmethod
    def done(cls) -> "ReplyEvent":
        return cls("done")

    @classmethod
    def error(cls, cause: str) -> "ReplyEvent":
        return cls("error", cause)

    @classmethod
    def stopped(cls) -> "ReplyEvent":
        return cls("stopped")

    @property
    def payload(self) -> str:
        if self.type == "start":
            return STREAM_START
        if self.type == "done":
            return STREAM_DONE
        if self.type == "stopped":
            return STREAM_STOPPED
        if self.type == "error":
            return STREAM_ERROR + self.text
        return self.text

    @property
    def is_terminal(self) -> bool:
        """A run is resolved only once one of these has been observed."""
        return self.type in ("done", "error", "stopped")

    @classmethod
    def from_payload(cls, payload: str) -> "ReplyEvent":
        if payload == STREAM_START:
            return cls.start()
        if payload == STREAM_DONE:
            return cls.done()
        if payload == STREAM_STOPPED:
            return cls.stopped()
        if payload.startswith(STREAM_ERROR):
            return cls.error(payload[len(STREAM_ERROR) :])
        return cls.chunk(payload)
