"""Server-Sent-Events framing — ``data: <json>`` lines separated by a blank line."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from typing import Any

from relay.schemas import TERMINAL_EVENT_TYPES

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(payload: dict[str, Any]) -> str:
    return f"{DATA_PREFIX}{json.dumps(payload)}\n\n"


def parse_event_line(line: str) -> dict[str, Any] | None:
    """Decode one ``data:`` line. Blank lines, comments and junk give None."""
    line = line.strip()
    if not line.startswith(DATA_PREFIX.strip()):
        return None
    body = line[len("data:"):].strip()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.warning(f"Unparseable SSE line: {line[:200]!r}")
        return None
    if not isinstance(payload, dict) or "type" not in payload:
        logger.warning(f"SSE payload without a type: {line[:200]!r}")
        return None
    return payload


def iter_events(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    """Yield events in order, stopping after the first terminal one."""
    for line in lines:
        event = parse_event_line(line)
        if event is None:
            continue
        yield event
        if event["type"] in TERMINAL_EVENT_TYPES:
            return


async def aiter_events(lines: AsyncIterable[str]) -> AsyncIterator[dict[str, Any]]:
    """Async counterpart of ``iter_events``, e.g. over ``response.aiter_lines()``."""
    async for line in lines:
        event = parse_event_line(line)
        if event is None:
            continue
        yield event
        if event["type"] in TERMINAL_EVENT_TYPES:
            return
