"""Unit tests for the SSE relay."""

import json
import unittest

from fastapi.responses import StreamingResponse

from rag_api.fireworks_client import FireworksAPIError
from rag_api.streaming import (
    create_sse_data,
    create_sse_error,
    create_sse_response,
    relay_stream,
)


def failing_stream(error):
    yield '{"choices": [{"delta": {"content": "partial"}}]}'
    raise error


class TestSSEHelpers(unittest.TestCase):
    """Test cases for SSE event formatting."""

    def test_data_event(self) -> None:
        self.assertEqual(create_sse_data('{"a": 1}'), 'data: {"a": 1}\n\n')

    def test_error_event(self) -> None:
        event = create_sse_error("boom")

        self.assertTrue(event.startswith("data: "))
        self.assertTrue(event.endswith("\n\n"))
        self.assertEqual(json.loads(event[len("data: "):]), {"error": True, "message": "boom"})


class TestRelayStream(unittest.TestCase):
    """Test cases for relay_stream."""

    def test_successful_stream_ends_with_done(self) -> None:
        events = list(relay_stream(iter(['{"n": 1}', '{"n": 2}'])))

        self.assertEqual(events, [
            'data: {"n": 1}\n\n',
            'data: {"n": 2}\n\n',
            "data: [DONE]\n\n",
        ])

    def test_empty_stream_still_terminates(self) -> None:
        self.assertEqual(list(relay_stream(iter([]))), ["data: [DONE]\n\n"])

    def test_upstream_error_body_is_forwarded(self) -> None:
        error = FireworksAPIError("chat/completions returned 400", status_code=400, body="bad model")

        events = list(relay_stream(failing_stream(error)))

        self.assertEqual(len(events), 2)
        self.assertEqual(json.loads(events[1][len("data: "):]), {"error": True, "message": "bad model"})
        self.assertNotIn("data: [DONE]\n\n", events)

    def test_transport_error_uses_message(self) -> None:
        error = FireworksAPIError("Stream interrupted: reset")

        events = list(relay_stream(failing_stream(error)))

        self.assertEqual(json.loads(events[-1][len("data: "):])["message"], "Stream interrupted: reset")


class TestCreateSSEResponse(unittest.TestCase):
    """Test cases for create_sse_response."""

    def test_response_headers(self) -> None:
        response = create_sse_response(iter(["data: [DONE]\n\n"]))

        self.assertIsInstance(response, StreamingResponse)
        self.assertEqual(response.media_type, "text/event-stream")
        self.assertEqual(response.headers["cache-control"], "no-cache")
        self.assertEqual(response.headers["connection"], "keep-alive")
        self.assertEqual(response.headers["x-accel-buffering"], "no")


if __name__ == "__main__":
    unittest.main()
