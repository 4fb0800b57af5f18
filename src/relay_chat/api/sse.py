import json

from ..bot.events import BOT_REPLY_EVENT


def format_sse_event(event_type: str, data: str) -> dict:
    """Format an SSE event for sse-starlette's EventSourceResponse."""
    return {"event": event_type, "data": data}


def sse_init(data: dict) -> dict:
    return format_sse_event("init", json.dumps(data))


def sse_bot_reply(payload: str) -> dict:
    return format_sse_event(BOT_REPLY_EVENT, payload)
