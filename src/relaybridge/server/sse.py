"""
Server-Sent Events framing for session event logs.

Each envelope becomes one frame::

    id: 7
    event: message
    data: {"id":7,"event":"message","data":{...},"timestamp":...}

The ``id`` field lets browsers (and the Android client) reconnect with a
``Last-Event-ID`` header; the stream then resumes right after that envelope.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import structlog
from fastapi import Request

from relaybridge.core.constants import SSE_KEEPALIVE_SECONDS
from relaybridge.core.events.envelope import Envelope, EventKind
from relaybridge.core.session.models import SessionStatus
from relaybridge.core.session.session import Session

logger = structlog.get_logger()

KEEPALIVE_FRAME = ": keepalive\n\n"


def format_sse(envelope: Envelope) -> str:
    """Format one envelope as an SSE frame."""
    return f"id: {envelope.sequence}\nevent: {envelope.kind}\ndata: {envelope.to_json()}\n\n"


def parse_last_event_id(value: str | None) -> int | None:
    """Parse a Last-Event-ID header or ``after`` value; non-numeric values are ignored."""
    if value is None:
        return None
    value = value.strip()
    if not value.isdigit():
        return None
    return int(value)


def is_terminal(envelope: Envelope) -> bool:
    """True for the status envelope that marks a session Dead."""
    return (
        envelope.kind == EventKind.STATUS
        and isinstance(envelope.payload, dict)
        and envelope.payload.get("status") == SessionStatus.DEAD
    )


async def stream_session_events(
    request: Request,
    session: Session,
    *,
    after: int | None = None,
    keepalive_s: float = SSE_KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for *session*: buffered envelopes after *after*, then live ones.

    Without *after* only envelopes appended from now on are sent.  The stream
    ends once the session is Dead and everything queued has been sent, or when
    the client disconnects.
    """
    queue: asyncio.Queue[Envelope] = asyncio.Queue()
    callback = queue.put_nowait
    session.subscribe(callback, after=after)
    log = logger.bind(session_id=session.id)
    log.debug("sse_stream_opened", after=after)
    try:
        while True:
            if queue.empty() and session.is_dead:
                return
            try:
                envelope = await asyncio.wait_for(queue.get(), timeout=keepalive_s)
            except TimeoutError:
                if await request.is_disconnected():
                    return
                yield KEEPALIVE_FRAME
                continue
            yield format_sse(envelope)
            if is_terminal(envelope) and queue.empty():
                return
    finally:
        session.unsubscribe(callback)
        log.debug("sse_stream_closed")
