"""Server-Sent Events framing in the OpenAI chat.completion.chunk shape."""

from __future__ import annotations

import json
import time
import uuid

from chatbridge.errors import BridgeError


SSE_HEADERS = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Type: text/event-stream\r\n"
    b"Cache-Control: no-cache\r\n"
    b"Connection: close\r\n"
    b"\r\n"
)

BARE_OK = b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\nConnection: keep-alive\r\n\r\n"

DONE_FRAME = b"data: [DONE]\n\n"

# SSE comment line; clients ignore it, a dead peer makes the write fail.
HEARTBEAT_FRAME = b":\n\n"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:12]}"


def delta_frame(content: str, *, completion_id: str, model: str) -> bytes:
    chunk = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": {"content": content},
                "finish_reason": None,
            }
        ],
    }
    return _frame(chunk)


def error_frame(error: BridgeError, *, completion_id: str, model: str) -> bytes:
    chunk = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": {"content": f" [Error: {error.code}] {error.message}"},
                "finish_reason": "error",
            }
        ],
        "error": error.to_dict(),
    }
    return _frame(chunk)


def _frame(payload: dict) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")
