"""Server-Sent Events (SSE) utilities.

This module contains functions for creating and working with SSE responses.
"""

import json
import logging
from typing import Iterable, Iterator

from fastapi.responses import StreamingResponse

from rag_api.fireworks_client import STREAM_DONE, FireworksAPIError

logger = logging.getLogger(__name__)


def create_sse_data(payload: str) -> str:
    """Wrap a payload in a single SSE data event."""
    return f"data: {payload}\n\n"


def create_sse_error(message: str) -> str:
    """Create the error event sent to clients when the stream fails."""
    return create_sse_data(json.dumps({"error": True, "message": message}))


def relay_stream(chunks: Iterable[str]) -> Iterator[str]:
    """
    Re-emit upstream payloads as SSE events.

    A successful stream ends with a ``[DONE]`` event; a failed one ends with a
    single error event instead.
    """
    try:
        for chunk in chunks:
            yield create_sse_data(chunk)
    except FireworksAPIError as e:
        logger.error(f"Stream error: {e}")
        yield create_sse_error(e.body if e.body is not None else str(e))
        return

    yield create_sse_data(STREAM_DONE)


def create_sse_response(events: Iterator[str]) -> StreamingResponse:
    """
    Create a Server-Sent Events (SSE) response.

    Args:
        events: Iterator yielding formatted SSE events

    Returns:
        StreamingResponse configured for SSE
    """
    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
