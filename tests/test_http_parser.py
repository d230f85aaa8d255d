import json
import socket
import threading
import time
import unittest

from chatbridge.http_parser import ConnectionClosed, parse_head, parse_json_body, read_request


class HttpParserTests(unittest.TestCase):
    def setUp(self) -> None:
        self.server_sock, self.client_sock = socket.socketpair()
        self.server_sock.settimeout(5)

    def tearDown(self) -> None:
        self.server_sock.close()
        self.client_sock.close()

    def _send_later(self, *parts: bytes, delay: float = 0.02) -> threading.Thread:
        def writer() -> None:
            for part in parts:
                self.client_sock.sendall(part)
                time.sleep(delay)

        thread = threading.Thread(target=writer)
        thread.start()
        return thread

    def test_head_and_body_split_across_reads(self) -> None:
        body = json.dumps({"messages": [{"role": "user", "content": "hi"}]}).encode()
        head = (
            b"POST /v1/chat/completions HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            + f"Content-Length: {len(body)}\r\n".encode()
            + b"\r\n"
        )
        writer = self._send_later(head[:10], head[10:], body[:5], body[5:])
        request = read_request(self.server_sock, bytearray())
        writer.join()
        self.assertEqual(request.method, "POST")
        self.assertEqual(request.target, "/v1/chat/completions")
        self.assertEqual(request.head.headers["host"], "localhost")
        self.assertEqual(request.body, body)

    def test_pipelined_bytes_stay_in_buffer(self) -> None:
        self.client_sock.sendall(b"GET /a HTTP/1.1\r\n\r\nGET /b HTTP/1.1\r\n\r\n")
        buffer = bytearray()
        first = read_request(self.server_sock, buffer)
        second = read_request(self.server_sock, buffer)
        self.assertEqual(first.target, "/a")
        self.assertEqual(second.target, "/b")
        self.assertEqual(buffer, bytearray())

    def test_missing_content_length_reads_permissively(self) -> None:
        writer = self._send_later(
            b'POST /v1/chat/completions HTTP/1.1\r\n\r\n{"messages": [',
            b'{"role": "user", "content": "late"}]}',
        )
        request = read_request(self.server_sock, bytearray(), body_grace_seconds=1.0)
        writer.join()
        self.assertEqual(parse_json_body(request.body)["messages"][0]["content"], "late")

    def test_clean_eof_is_connection_closed(self) -> None:
        self.client_sock.shutdown(socket.SHUT_WR)
        with self.assertRaises(ConnectionClosed):
            read_request(self.server_sock, bytearray())

    def test_truncated_body_is_rejected(self) -> None:
        self.client_sock.sendall(b"POST /x HTTP/1.1\r\nContent-Length: 50\r\n\r\n{}")
        self.client_sock.shutdown(socket.SHUT_WR)
        with self.assertRaises(ValueError):
            read_request(self.server_sock, bytearray())

    def test_malformed_request_line(self) -> None:
        with self.assertRaises(ValueError):
            parse_head(b"NONSENSE\r\nHost: x")

    def test_invalid_content_length(self) -> None:
        head = parse_head(b"POST / HTTP/1.1\r\nContent-Length: abc")
        with self.assertRaises(ValueError):
            _ = head.content_length

    def test_json_body_with_trailing_garbage(self) -> None:
        payload = parse_json_body(b'{"model": "x"}\r\n\r\nextra')
        self.assertEqual(payload, {"model": "x"})

    def test_json_body_without_object_fails(self) -> None:
        with self.assertRaises(ValueError):
            parse_json_body(b"not json at all")
        with self.assertRaises(ValueError):
            parse_json_body(b"   ")

    def test_invalid_utf8_body_is_rejected(self) -> None:
        with self.assertRaises(ValueError) as ctx:
            parse_json_body(b'{"messages": [{"role": "user", "content": "caf\xe9"}]}')
        self.assertIn("UTF-8", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
