import json
import socket
import tempfile
import threading
import time
import unittest
from pathlib import Path

from chatbridge.api_server import ApiServer, bind_first_free_port, write_server_info
from chatbridge.constants import SYSTEM_DIRECTIVE
from chatbridge.errors import BridgeTimeout, LedgerUnavailable


class FakeSession:
    def __init__(self, *, chunks=None, error=None, hang: bool = False, polls: int = 0) -> None:
        self.id = "s-test"
        self.polls = polls
        self.chunks = chunks or []
        self.error = error
        self.hang = hang
        self.cancel_event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def stream(self, *, poll_seconds: float = 0.25, should_abort=None):
        if self.hang:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                time.sleep(0.02)
                if should_abort is not None and should_abort():
                    self.cancel()
                    return
            return
        for _poll in range(self.polls):
            time.sleep(0.05)
            if should_abort is not None and should_abort():
                self.cancel()
                return
        yield from self.chunks
        if self.error is not None:
            raise self.error


class FakeController:
    def __init__(self, session: FakeSession, *, submit_error=None) -> None:
        self.session = session
        self.submit_error = submit_error
        self.submitted: list[tuple[str, str]] = []

    def submit(self, prompt: str, model: str) -> FakeSession:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((prompt, model))
        return self.session


def _chat_request(payload: dict, *, target: str = "/v1/chat/completions") -> bytes:
    body = json.dumps(payload).encode()
    return (
        f"POST {target} HTTP/1.1\r\nHost: localhost\r\nContent-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n\r\n"
    ).encode() + body


def _read_all(sock: socket.socket) -> bytes:
    chunks = []
    while True:
        data = sock.recv(65536)
        if not data:
            break
        chunks.append(data)
    return b"".join(chunks)


def _frames(raw: bytes) -> list[str]:
    _head, _sep, body = raw.partition(b"\r\n\r\n")
    return [frame[len("data: "):] for frame in body.decode().split("\n\n") if frame.startswith("data: ")]


class ApiServerTests(unittest.TestCase):
    def _serve(self, session: FakeSession, **kwargs) -> tuple[ApiServer, FakeController]:
        controller = FakeController(session, **kwargs)
        server = ApiServer(("127.0.0.1", 0), controller, idle_timeout_seconds=5)
        thread = threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
        thread.start()
        self.addCleanup(server.server_close)
        self.addCleanup(server.shutdown)
        return server, controller

    def _connect(self, server: ApiServer) -> socket.socket:
        sock = socket.create_connection(("127.0.0.1", server.port), timeout=5)
        self.addCleanup(sock.close)
        return sock

    def test_chat_request_streams_answer_then_done(self) -> None:
        server, controller = self._serve(FakeSession(chunks=["4"]))
        sock = self._connect(server)
        sock.sendall(_chat_request({"model": "gemini-web", "messages": [{"role": "user", "content": "2+2?"}]}))
        raw = _read_all(sock)

        self.assertTrue(raw.startswith(b"HTTP/1.1 200 OK\r\n"))
        self.assertIn(b"Content-Type: text/event-stream", raw)
        frames = _frames(raw)
        self.assertEqual(len(frames), 2)
        chunk = json.loads(frames[0])
        self.assertEqual(chunk["object"], "chat.completion.chunk")
        self.assertEqual(chunk["choices"][0]["delta"]["content"], "4")
        self.assertEqual(chunk["model"], "gemini-web")
        self.assertEqual(frames[1], "[DONE]")
        self.assertEqual(controller.submitted, [(SYSTEM_DIRECTIVE + "\n\n2+2?", "gemini-web")])

    def test_error_becomes_terminal_error_chunk(self) -> None:
        error = BridgeTimeout(BridgeTimeout.NEVER_STARTED, 15)
        server, _controller = self._serve(FakeSession(error=error))
        sock = self._connect(server)
        sock.sendall(_chat_request({"messages": [{"role": "user", "content": "hi"}]}))
        frames = _frames(_read_all(sock))

        self.assertEqual(len(frames), 2)
        chunk = json.loads(frames[0])
        self.assertTrue(chunk["choices"][0]["delta"]["content"].startswith(" [Error: timeout]"))
        self.assertEqual(chunk["error"]["phase"], "never_started")
        self.assertEqual(frames[1], "[DONE]")

    def test_invalid_body_is_bad_request_chunk(self) -> None:
        server, controller = self._serve(FakeSession(chunks=["unused"]))
        sock = self._connect(server)
        body = b"{not json"
        sock.sendall(
            b"POST /v1/chat/completions HTTP/1.1\r\nContent-Length: "
            + str(len(body)).encode()
            + b"\r\n\r\n"
            + body
        )
        frames = _frames(_read_all(sock))

        self.assertEqual(json.loads(frames[0])["error"]["code"], "bad_request")
        self.assertEqual(frames[-1], "[DONE]")
        self.assertEqual(controller.submitted, [])

    def test_empty_messages_is_bad_request(self) -> None:
        server, controller = self._serve(FakeSession(chunks=["unused"]))
        sock = self._connect(server)
        sock.sendall(_chat_request({"messages": []}))
        frames = _frames(_read_all(sock))
        self.assertEqual(json.loads(frames[0])["error"]["code"], "bad_request")
        self.assertEqual(controller.submitted, [])

    def test_other_routes_get_bare_ok_and_keep_alive(self) -> None:
        server, controller = self._serve(FakeSession(chunks=["pong"]))
        sock = self._connect(server)
        sock.sendall(b"GET /v1/models HTTP/1.1\r\nHost: localhost\r\n\r\n")
        head = b""
        while b"\r\n\r\n" not in head:
            head += sock.recv(1024)
        self.assertIn(b"Content-Length: 0", head)
        self.assertIn(b"Connection: keep-alive", head)

        sock.sendall(_chat_request({"messages": [{"role": "user", "content": "ping"}]}))
        frames = _frames(_read_all(sock))
        self.assertEqual(json.loads(frames[0])["choices"][0]["delta"]["content"], "pong")
        self.assertEqual(len(controller.submitted), 1)

    def test_client_disconnect_cancels_session(self) -> None:
        session = FakeSession(hang=True)
        server, _controller = self._serve(session)
        sock = socket.create_connection(("127.0.0.1", server.port), timeout=5)
        sock.sendall(_chat_request({"messages": [{"role": "user", "content": "bye"}]}))
        head = b""
        while b"\r\n\r\n" not in head:
            head += sock.recv(1024)
        sock.close()
        self.assertTrue(session.cancel_event.wait(5))

    def test_half_closed_client_still_receives_the_answer(self) -> None:
        session = FakeSession(chunks=["4"], polls=3)
        server, _controller = self._serve(session)
        sock = self._connect(server)
        sock.sendall(_chat_request({"messages": [{"role": "user", "content": "2+2?"}]}))
        sock.shutdown(socket.SHUT_WR)
        raw = _read_all(sock)

        self.assertFalse(session.cancelled)
        frames = _frames(raw)
        self.assertEqual(json.loads(frames[0])["choices"][0]["delta"]["content"], "4")
        self.assertEqual(frames[-1], "[DONE]")
        self.assertIn(b":\n\n", raw.partition(b"\r\n\r\n")[2])

    def test_submit_failure_becomes_error_chunk(self) -> None:
        error = LedgerUnavailable("could not create session ledger under runs: disk full")
        server, _controller = self._serve(FakeSession(chunks=["unused"]), submit_error=error)
        sock = self._connect(server)
        sock.sendall(_chat_request({"messages": [{"role": "user", "content": "hi"}]}))
        frames = _frames(_read_all(sock))

        self.assertEqual(json.loads(frames[0])["error"]["code"], "ledger_unavailable")
        self.assertEqual(frames[-1], "[DONE]")


class BindTests(unittest.TestCase):
    def test_no_free_port_in_range_is_fatal(self) -> None:
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        self.addCleanup(blocker.close)
        port = blocker.getsockname()[1]
        with self.assertRaises(SystemExit) as ctx:
            bind_first_free_port("127.0.0.1", port, port, FakeController(FakeSession()))
        self.assertIn(str(port), str(ctx.exception))

    def test_server_info_is_written(self) -> None:
        server = ApiServer(("127.0.0.1", 0), FakeController(FakeSession()))
        self.addCleanup(server.server_close)
        with tempfile.TemporaryDirectory(dir=".") as tmp:
            runs_dir = Path(tmp)
            write_server_info(runs_dir, server, target_url="https://example.test/app")
            payload = json.loads((runs_dir / "server.json").read_text(encoding="utf-8"))
        self.assertEqual(payload["port"], server.port)
        self.assertEqual(payload["base_url"], f"http://127.0.0.1:{server.port}/v1")


if __name__ == "__main__":
    unittest.main()
