"""Parsing of ``text/event-stream`` responses."""

import json
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field


@dataclass
class SseEvent:
    """A decoded server-sent event."""

    event: str = "message"
    data: dict = field(default_factory=dict)


def _decode(raw: str) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return value if isinstance(value, dict) else {"value": value}


async def parse_sse(lines: AsyncIterable[str]) -> AsyncIterator[SseEvent]:
    """Group stream lines into events; a blank line terminates each event."""
    event = "message"
    data: list[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data or event != "message":
                yield SseEvent(event, _decode("\n".join(data)))
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield SseEvent(event, _decode("\n".join(data)))
