"""Chat-completions ingress: raw-socket HTTP/1.1 listener streaming SSE."""

from __future__ import annotations

import os
import socket
import socketserver
from pathlib import Path
from typing import Any

from chatbridge.constants import CHAT_COMPLETIONS_ROUTE
from chatbridge.errors import BadRequest, BridgeError
from chatbridge.http_parser import ConnectionClosed, HttpRequest, parse_json_body, read_request
from chatbridge.models import IncomingRequest
from chatbridge.sse import (
    BARE_OK,
    DONE_FRAME,
    HEARTBEAT_FRAME,
    SSE_HEADERS,
    delta_frame,
    error_frame,
    new_completion_id,
)
from chatbridge.storage import append_log, write_json


def is_chat_route(request: HttpRequest) -> bool:
    return request.method == "POST" and CHAT_COMPLETIONS_ROUTE in request.target


def client_gone(sock: socket.socket) -> bool:
    """Write an SSE comment to the client; only a reset or broken pipe means it left.

    A client that half-closed its side after sending the request still reads
    the stream, so an empty read is not treated as a disconnect.
    """
    try:
        sock.sendall(HEARTBEAT_FRAME)
    except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError):
        return True
    except socket.timeout:
        return False
    return False


class _ApiHandler(socketserver.BaseRequestHandler):
    server: "ApiServer"

    def handle(self) -> None:
        sock: socket.socket = self.request
        sock.settimeout(self.server.idle_timeout_seconds)
        buffer = bytearray()
        while True:
            try:
                request = read_request(sock, buffer)
            except ConnectionClosed:
                return
            except ValueError as exc:
                self.server.log(f"bad_request peer={self.client_address[0]} error={exc}")
                return
            except OSError:
                return

            if is_chat_route(request):
                self._handle_chat(sock, request)
                return
            try:
                sock.sendall(BARE_OK)
            except OSError:
                return

    def _handle_chat(self, sock: socket.socket, request: HttpRequest) -> None:
        completion_id = new_completion_id()
        try:
            sock.sendall(SSE_HEADERS)
        except OSError:
            return

        try:
            incoming = IncomingRequest.from_dict(parse_json_body(request.body))
            if not incoming.messages:
                raise ValueError("Request has no message content")
        except ValueError as exc:
            self.server.log(f"bad_request route={request.target} error={exc}")
            self._send_error(sock, BadRequest(str(exc)), completion_id=completion_id, model="")
            return

        try:
            session = self.server.controller.submit(incoming.flattened_prompt(), incoming.model)
        except BridgeError as exc:
            self.server.log(f"submit_failed error={exc.code} message={exc.message}")
            self._send_error(sock, exc, completion_id=completion_id, model=incoming.model)
            return
        self.server.log(f"chat_request session={session.id} model={incoming.model} messages={len(incoming.messages)}")
        try:
            for chunk in session.stream(
                poll_seconds=self.server.heartbeat_seconds,
                should_abort=lambda: client_gone(sock),
            ):
                sock.sendall(delta_frame(chunk, completion_id=completion_id, model=incoming.model))
            if session.cancelled:
                self.server.log(f"client_gone session={session.id}")
                return
            sock.sendall(DONE_FRAME)
        except BridgeError as exc:
            self._send_error(sock, exc, completion_id=completion_id, model=incoming.model)
        except OSError as exc:
            session.cancel()
            self.server.log(f"client_gone session={session.id} error={exc}")

    def _send_error(self, sock: socket.socket, error: BridgeError, *, completion_id: str, model: str) -> None:
        try:
            sock.sendall(error_frame(error, completion_id=completion_id, model=model) + DONE_FRAME)
        except OSError:
            return


class ApiServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(
        self,
        server_address: tuple[str, int],
        controller: Any,
        *,
        log_path: Path | None = None,
        idle_timeout_seconds: float = 30.0,
        heartbeat_seconds: float = 1.0,
    ):
        super().__init__(server_address, _ApiHandler)
        self.controller = controller
        self.log_path = log_path
        self.idle_timeout_seconds = idle_timeout_seconds
        self.heartbeat_seconds = heartbeat_seconds

    @property
    def port(self) -> int:
        return int(self.server_address[1])

    def log(self, message: str) -> None:
        if self.log_path is not None:
            append_log(self.log_path, message)


def bind_first_free_port(
    host: str,
    port_start: int,
    port_end: int,
    controller: Any,
    *,
    log_path: Path | None = None,
) -> ApiServer:
    failures: list[str] = []
    for port in range(port_start, port_end + 1):
        try:
            return ApiServer((host, port), controller, log_path=log_path)
        except OSError as exc:
            failures.append(f"{port} ({exc.strerror or exc})")
    raise SystemExit(
        f"Could not bind any port in {host}:{port_start}-{port_end}: " + ", ".join(failures)
    )


def write_server_info(runs_dir: Path, server: ApiServer, *, target_url: str) -> None:
    host, port = server.server_address[:2]
    write_json(
        runs_dir / "server.json",
        {
            "host": host,
            "port": port,
            "pid": os.getpid(),
            "base_url": f"http://{host}:{port}/v1",
            "target_url": target_url,
        },
    )
