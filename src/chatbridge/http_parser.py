"""Minimal HTTP/1.1 request reading and parsing over raw sockets."""

from __future__ import annotations

import json
import socket
from dataclasses import dataclass, field
from typing import Any


HEADER_TERMINATOR = b"\r\n\r\n"
MAX_HEADER_BYTES = 64 * 1024
MAX_BODY_BYTES = 16 * 1024 * 1024
RECV_CHUNK = 65536


class ConnectionClosed(Exception):
    """Peer closed the connection before a full request head arrived."""


@dataclass(frozen=True)
class RequestHead:
    method: str
    target: str
    version: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def content_length(self) -> int | None:
        raw = self.headers.get("content-length", "").strip()
        if not raw:
            return None
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid Content-Length: {raw!r}") from exc
        if value < 0 or value > MAX_BODY_BYTES:
            raise ValueError(f"Content-Length out of range: {value}")
        return value


@dataclass(frozen=True)
class HttpRequest:
    head: RequestHead
    body: bytes

    @property
    def method(self) -> str:
        return self.head.method

    @property
    def target(self) -> str:
        return self.head.target


def parse_head(raw: bytes) -> RequestHead:
    text = raw.decode("iso-8859-1")
    lines = text.split("\r\n")
    request_line = lines[0].strip() if lines else ""
    parts = request_line.split()
    if len(parts) != 3 or not parts[2].upper().startswith("HTTP/"):
        raise ValueError(f"Malformed request line: {request_line[:120]!r}")
    method, target, version = parts
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        if ":" not in line:
            raise ValueError(f"Malformed header line: {line[:120]!r}")
        name, value = line.split(":", 1)
        headers[name.strip().lower()] = value.strip()
    return RequestHead(method=method.upper(), target=target, version=version.upper(), headers=headers)


def read_request(
    sock: socket.socket,
    buffer: bytearray,
    *,
    body_grace_seconds: float = 0.25,
) -> HttpRequest:
    """Read one request from ``sock``; bytes past the request stay in ``buffer``.

    Raises ``ConnectionClosed`` on a clean EOF before any request bytes and
    ``ValueError`` on malformed input.
    """
    while HEADER_TERMINATOR not in buffer:
        if len(buffer) > MAX_HEADER_BYTES:
            raise ValueError("Request head too large")
        chunk = sock.recv(RECV_CHUNK)
        if not chunk:
            if buffer.strip():
                raise ValueError("Connection closed mid-request")
            raise ConnectionClosed()
        buffer.extend(chunk)

    head_end = buffer.index(HEADER_TERMINATOR)
    head = parse_head(bytes(buffer[:head_end]))
    del buffer[: head_end + len(HEADER_TERMINATOR)]

    length = head.content_length
    if length is not None:
        while len(buffer) < length:
            chunk = sock.recv(RECV_CHUNK)
            if not chunk:
                raise ValueError(f"Body truncated: expected {length} bytes, got {len(buffer)}")
            buffer.extend(chunk)
        body = bytes(buffer[:length])
        del buffer[:length]
        return HttpRequest(head=head, body=body)

    if head.method in {"GET", "HEAD", "OPTIONS", "DELETE"}:
        return HttpRequest(head=head, body=b"")

    # No Content-Length: take what arrived and wait briefly for stragglers
    # until the body parses as JSON.
    _read_permissive_body(sock, buffer, body_grace_seconds)
    body = bytes(buffer)
    buffer.clear()
    return HttpRequest(head=head, body=body)


def _read_permissive_body(sock: socket.socket, buffer: bytearray, grace_seconds: float) -> None:
    if _looks_complete(buffer):
        return
    previous_timeout = sock.gettimeout()
    sock.settimeout(max(0.01, grace_seconds))
    try:
        while not _looks_complete(buffer) and len(buffer) <= MAX_BODY_BYTES:
            try:
                chunk = sock.recv(RECV_CHUNK)
            except socket.timeout:
                break
            if not chunk:
                break
            buffer.extend(chunk)
    finally:
        sock.settimeout(previous_timeout)


def _looks_complete(buffer: bytearray) -> bool:
    if not buffer.strip():
        return False
    try:
        json.loads(bytes(buffer).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return False
    return True


def parse_json_body(body: bytes) -> Any:
    """Decode a JSON request body, tolerating trailing bytes after the object."""
    try:
        text = body.decode("utf-8").strip()
    except UnicodeDecodeError as exc:
        raise ValueError(f"Request body is not valid UTF-8 (byte {exc.start})") from exc
    if not text:
        raise ValueError("Empty request body")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    decoder = json.JSONDecoder()
    for idx, char in enumerate(text):
        if char != "{":
            continue
        try:
            obj, _end = decoder.raw_decode(text[idx:])
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    raise ValueError("No valid JSON object found in request body")
