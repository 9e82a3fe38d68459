import asyncio
import json
import logging
from typing import Any, Dict

from fastapi import Request
from fastapi.responses import StreamingResponse

from app.core.events import change_feed

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


def sse_response(request: Request, topic: str, snapshot: Dict[str, Any]) -> StreamingResponse:
    """
    Stream change-feed payloads for a topic as Server-Sent Events.

    The first event is the current snapshot so a client that reconnects is
    never behind. The subscription is released when the client disconnects.
    """

    async def event_generator():
        async with change_feed.subscribe(topic) as subscription:
            yield f"event: snapshot\ndata: {json.dumps(snapshot, default=str)}\n\n"
            while not await request.is_disconnected():
                try:
                    payload = await subscription.get(timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: change\ndata: {json.dumps(payload, default=str)}\n\n"
        logger.debug(f"SSE subscriber left {topic}")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable buffering in nginx
        },
    )
