"""Tests for the response delivery engine."""

import threading

import pytest

from faultinjector.core.delivery import deliver
from faultinjector.core.errors import ConnectionLost
from faultinjector.core.faults import resolve
from faultinjector.core.relay import CapturedResponse
from faultinjector.core.terminator import ClientConnection


class _WireSerializer:
    """Writes a minimal HTTP/1.1 head through the client connection."""

    def __init__(self, connection):
        self.connection = connection
        self._lines = []

    def send_response_only(self, code, message=None):
        self._lines.append(f"HTTP/1.1 {code} {message or ''}".rstrip() + "\r\n")

    def send_header(self, keyword, value):
        self._lines.append(f"{keyword}: {value}\r\n")

    def end_headers(self):
        self._lines.append("\r\n")
        self.connection.write("".join(self._lines).encode("latin-1"))
        self._lines = []


def _make_response(body=b"0123456789", headers=None, status=200, reason="OK"):
    if headers is None:
        headers = (("Content-Type", "text/plain"), ("Content-Length", str(len(body))))
    return CapturedResponse(status, tuple(headers), body, reason)


def _split(raw):
    head, _, body = raw.partition(b"\r\n\r\n")
    return head.decode("latin-1").split("\r\n"), body


class TestDeliver:
    def _deliver(self, tcp_pair, response, token, method="GET", event=None):
        server, _ = tcp_pair
        conn = ClientConnection(server, shutdown_event=event)
        plan = resolve(token, response.body_length)
        written = deliver(response, plan, _WireSerializer(conn), conn, request_method=method, request_id=7)
        return conn, written

    def test_full(self, tcp_pair, read_until_end):
        _, client = tcp_pair
        conn, written = self._deliver(tcp_pair, _make_response(), "f")
        assert written == 10
        conn.close()
        raw, how = read_until_end(client)
        lines, body = _split(raw)
        assert lines[0] == "HTTP/1.1 200 OK"
        assert "Content-Type: text/plain" in lines
        assert "Content-Length: 10" in lines
        assert body == b"0123456789"

    def test_partial_then_close(self, tcp_pair, read_until_end):
        _, client = tcp_pair
        conn, written = self._deliver(tcp_pair, _make_response(), "pc")
        assert written == 5
        assert conn.closed
        raw, how = read_until_end(client)
        lines, body = _split(raw)
        assert how == "eof"
        assert "Content-Length: 10" in lines
        assert body == b"01234"

    def test_truncation_is_logged(self, tcp_pair, caplog):
        caplog.set_level("INFO", logger="faultinjector.core.delivery")
        self._deliver(tcp_pair, _make_response(), "pc")
        assert "[#7] Writing response body of 5 of 10 bytes..." in caplog.messages

    def test_partial_then_abort(self, tcp_pair, read_until_end):
        _, client = tcp_pair
        conn, _ = self._deliver(tcp_pair, _make_response(), "pa")
        assert conn.aborted
        raw, how = read_until_end(client)
        assert how == "reset"
        # Data that was in flight may be discarded by the reset
        expected = b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\nContent-Length: 10\r\n\r\n01234"
        assert expected.startswith(raw)

    @pytest.mark.parametrize("token", ["n", "p"])
    def test_wait_actions_hold_connection(self, tcp_pair, read_until_end, token):
        _, client = tcp_pair
        event = threading.Event()
        result = {}

        def run():
            result["conn"], result["written"] = self._deliver(tcp_pair, _make_response(), token, event=event)

        worker = threading.Thread(target=run, daemon=True)
        worker.start()

        raw, how = read_until_end(client, timeout=0.5)
        assert how == "timeout"
        lines, body = _split(raw)
        assert lines[0] == "HTTP/1.1 200 OK"
        assert body == (b"" if token == "n" else b"01234")
        assert worker.is_alive()

        event.set()
        worker.join(timeout=2)
        assert not worker.is_alive()
        assert result["written"] == (0 if token == "n" else 5)

    def test_none_then_close_sends_head_only(self, tcp_pair, read_until_end):
        _, client = tcp_pair
        self._deliver(tcp_pair, _make_response(), "nc")
        raw, how = read_until_end(client)
        lines, body = _split(raw)
        assert how == "eof"
        assert lines[0] == "HTTP/1.1 200 OK"
        assert body == b""

    def test_none_then_abort(self, tcp_pair, read_until_end):
        _, client = tcp_pair
        conn, written = self._deliver(tcp_pair, _make_response(), "na")
        assert written == 0
        assert conn.aborted
        assert read_until_end(client)[1] == "reset"

    def test_duplicate_headers_and_order(self, tcp_pair, read_until_end):
        _, client = tcp_pair
        response = _make_response(b"c", headers=(
            ("Set-Cookie", "a=1"),
            ("X-Trace", "t"),
            ("Set-Cookie", "b=2"),
            ("Content-Length", "1"),
        ))
        conn, _ = self._deliver(tcp_pair, response, "f")
        conn.close()
        lines, _ = _split(read_until_end(client)[0])
        assert lines[1:] == ["Set-Cookie: a=1", "X-Trace: t", "Set-Cookie: b=2", "Content-Length: 1"]

    def test_adds_content_length_when_missing(self, tcp_pair, read_until_end):
        _, client = tcp_pair
        response = _make_response(b"hello chunked world", headers=(("Content-Type", "text/plain"),))
        conn, written = self._deliver(tcp_pair, response, "pc")
        assert written == 9
        lines, body = _split(read_until_end(client)[0])
        assert "Content-Length: 19" in lines
        assert body == b"hello chu"

    def test_no_length_added_for_head(self, tcp_pair, read_until_end):
        _, client = tcp_pair
        response = _make_response(b"", headers=(("Content-Type", "text/plain"),))
        conn, _ = self._deliver(tcp_pair, response, "f", method="HEAD")
        conn.close()
        lines, _ = _split(read_until_end(client)[0])
        assert not any(line.startswith("Content-Length") for line in lines)

    def test_no_length_added_for_204(self, tcp_pair, read_until_end):
        _, client = tcp_pair
        response = _make_response(b"", headers=(), status=204, reason="No Content")
        conn, _ = self._deliver(tcp_pair, response, "f")
        conn.close()
        lines, _ = _split(read_until_end(client)[0])
        assert lines == ["HTTP/1.1 204 No Content"]

    def test_on_written_runs_before_termination(self, tcp_pair):
        server, _ = tcp_pair
        conn = ClientConnection(server)
        seen = []

        def on_written(count):
            seen.append((count, conn.closed))

        response = _make_response()
        deliver(response, resolve("pc", response.body_length), _WireSerializer(conn), conn, on_written=on_written)
        assert seen == [(5, False)]
        assert conn.closed

    def test_header_write_failure(self, tcp_pair):
        server, _ = tcp_pair
        conn = ClientConnection(server)

        class _Broken(_WireSerializer):
            def end_headers(self):
                raise BrokenPipeError("client went away")

        response = _make_response()
        with pytest.raises(ConnectionLost):
            deliver(response, resolve("f", response.body_length), _Broken(conn), conn)
