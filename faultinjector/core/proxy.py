"""
Fault Injector HTTP Proxy
=========================
Listeners and per-connection request handling.

Features:
  • Plain HTTP and TLS-terminating listeners, both acting as a forward proxy
    keyed off each request's own target (absolute-form URL or Host header)
  • Any method and path is relayed upstream (CONNECT tunnelling is not)
  • Every captured response waits for an operator decision (see ``OperatorDesk``)
  • Each connection runs in its own thread; one request's failure never
    touches another request or the listeners
  • Session history and statistics of every handled exchange

Architecture:
  Uses Python's ``http.server`` + ``socketserver``, which hand each handler
  the raw client socket. That socket is what makes a real TCP reset possible.
"""

from __future__ import annotations

import logging
import ssl
import threading
import time
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from http.server import BaseHTTPRequestHandler
from socketserver import ThreadingTCPServer
from typing import Any, Callable, Dict, List, Optional

from faultinjector import __version__
from faultinjector.core.commands import ConsoleCommandSource, OperatorDesk
from faultinjector.core.delivery import deliver
from faultinjector.core.errors import (
    ConnectionLost,
    FaultInjectorError,
    HeaderRejected,
    OperatorUnavailable,
    RelayError,
)
from faultinjector.core.faults import ConnectionAction, DeliveryPlan
from faultinjector.core.relay import BodyStream, IncomingRequest, UpstreamRelay
from faultinjector.core.terminator import ClientConnection

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 30.0

# Unread request bodies are discarded before an error reply, within these limits
DRAIN_LIMIT = 1024 * 1024
DRAIN_TIMEOUT = 2.0


# ── Enums ────────────────────────────────────────────────────────────────────

class Outcome(str, Enum):
    """How a handled exchange ended."""
    DELIVERED = "delivered"
    WAITING = "waiting"
    CLOSED = "closed"
    ABORTED = "aborted"
    UPSTREAM_ERROR = "upstream_error"
    REJECTED = "rejected"
    CONNECTION_LOST = "connection_lost"
    NO_OPERATOR = "no_operator"

    @classmethod
    def for_action(cls, action: ConnectionAction) -> "Outcome":
        return {
            ConnectionAction.COMPLETE: cls.DELIVERED,
            ConnectionAction.WAIT: cls.WAITING,
            ConnectionAction.CLOSE: cls.CLOSED,
            ConnectionAction.ABORT: cls.ABORTED,
        }[action]


# ── Data Models ──────────────────────────────────────────────────────────────

@dataclass
class ExchangeRecord:
    """One handled request and what the operator did with its response."""
    id: int
    timestamp: float
    method: str
    url: str
    is_https: bool = False
    status_code: int = 0
    upstream_size: int = 0
    token: str = ""
    delivered_bytes: int = 0
    outcome: str = ""
    duration_ms: float = 0.0
    error: str = ""

    def get_summary(self) -> str:
        """One-line summary."""
        status = f" → {self.status_code}" if self.status_code else ""
        mode = f" [{self.token}]" if self.token else ""
        error = f" ({self.error})" if self.error else ""
        return (f"#{self.id} {self.method} {self.url}{status}{mode} "
                f"{self.delivered_bytes}/{self.upstream_size}B {self.outcome}{error}")


# ── Proxy Handler ────────────────────────────────────────────────────────────

class _FaultProxyHandler(BaseHTTPRequestHandler):
    """Relays one request at a time and delivers the operator's chosen fault."""

    protocol_version = "HTTP/1.1"
    server_version = f"HttpFaultInjector/{__version__}"

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} {format % args}")

    def setup(self):
        if isinstance(self.request, ssl.SSLSocket):
            self.request.settimeout(HANDSHAKE_TIMEOUT)
            self.request.do_handshake()
            self.request.settimeout(None)
        super().setup()

    def do_GET(self):
        self._proxy_request()

    def do_POST(self):
        self._proxy_request()

    def do_PUT(self):
        self._proxy_request()

    def do_DELETE(self):
        self._proxy_request()

    def do_PATCH(self):
        self._proxy_request()

    def do_HEAD(self):
        self._proxy_request()

    def do_OPTIONS(self):
        self._proxy_request()

    def do_TRACE(self):
        self._proxy_request()

    def do_CONNECT(self):
        self.send_error(501, "CONNECT tunnelling is not supported")

    def __getattr__(self, name: str):
        # Extension methods (PROPFIND, PURGE, ...) are relayed as well
        if name.startswith("do_"):
            return self._proxy_request
        raise AttributeError(name)

    # ── Request parsing ──────────────────────────────────────────────────

    def _build_incoming(self) -> IncomingRequest:
        """Turn the parsed request line and headers into an IncomingRequest.

        Raises:
            ValueError: the target host cannot be determined.
        """
        server: _FaultProxyServer = self.server  # type: ignore
        headers = IncomingRequest.group_header_lines(self.headers.items())

        if self.path.startswith("/"):
            # Origin-form, target taken from the Host header
            host_header = self.headers.get("Host", "").strip()
            if not host_header:
                raise ValueError("Missing Host header")
            authority = urllib.parse.urlsplit(f"//{host_header}")
            scheme = server.scheme
            host = authority.hostname or ""
            port = authority.port
            path, _, query = self.path.partition("?")
        else:
            target = urllib.parse.urlsplit(self.path)
            if not target.scheme or not target.netloc:
                raise ValueError(f"Unsupported request target: {self.path}")
            scheme = target.scheme
            host = target.hostname or ""
            port = target.port
            path = target.path or "/"
            query = target.query

        if not host:
            raise ValueError(f"No host in request target: {self.path}")

        incoming = IncomingRequest(
            method=self.command,
            scheme=scheme,
            host=host,
            port=port,
            path=path,
            query=query,
            headers=headers,
        )
        if incoming.content_length > 0:
            incoming.body = BodyStream(self.rfile, incoming.content_length)
        return incoming

    # ── Exchange ─────────────────────────────────────────────────────────

    def _proxy_request(self):
        """Relay, ask the operator, deliver."""
        engine: FaultProxy = self.server._fault_proxy  # type: ignore
        start_time = time.time()
        req_id = engine._next_id()

        try:
            incoming = self._build_incoming()
        except ValueError as e:
            logger.error(f"[#{req_id}] Bad request from {self.address_string()}: {e}")
            self.send_error(400, str(e))
            return

        record = ExchangeRecord(
            id=req_id,
            timestamp=start_time,
            method=self.command,
            url=incoming.url,
            is_https=incoming.scheme == "https",
        )
        connection = ClientConnection(self.connection, self.rfile, self.wfile, engine.shutdown_event)
        plan: Optional[DeliveryPlan] = None

        def on_written(count: int) -> None:
            record.delivered_bytes = count
            record.outcome = Outcome.for_action(plan.action).value
            record.duration_ms = (time.time() - start_time) * 1000
            engine._record(record)

        try:
            captured = engine.relay.relay(incoming, req_id)
            record.status_code = captured.status_code
            record.upstream_size = captured.body_length

            plan = engine.desk.choose(
                captured, req_id, f"{self.command} {incoming.url} → {captured.get_summary()}",
            )
            record.token = plan.token
            deliver(captured, plan, self, connection, self.command, req_id, on_written=on_written)

        except (HeaderRejected, RelayError) as e:
            logger.error(f"[#{req_id}] {e}")
            record.outcome = (Outcome.REJECTED if isinstance(e, HeaderRejected)
                              else Outcome.UPSTREAM_ERROR).value
            self._fail(record, e)
            self._discard_body(incoming)
            self.send_error(e.status_code or 502, str(e))

        except ConnectionLost as e:
            logger.warning(f"[#{req_id}] {e}")
            record.outcome = Outcome.CONNECTION_LOST.value
            self._fail(record, e)

        except OperatorUnavailable as e:
            logger.error(f"[#{req_id}] {e}; closing client connection")
            record.outcome = Outcome.NO_OPERATOR.value
            self._fail(record, e)
            connection.close()

        finally:
            if connection.closed or (plan is not None and plan.action is not ConnectionAction.COMPLETE):
                self.close_connection = True
            if incoming.has_unframed_body:
                # Its bytes are still unread and would be parsed as the next request
                self.close_connection = True

    def _discard_body(self, incoming: IncomingRequest) -> None:
        """Read what the relay left of the request body before replying with an error.

        Closing a socket with unread input resets the connection, which can
        destroy the error reply on its way to the client.
        """
        body = incoming.body
        if not isinstance(body, BodyStream) or not body.remaining or body.remaining > DRAIN_LIMIT:
            return
        self.connection.settimeout(DRAIN_TIMEOUT)
        try:
            for _ in body:
                pass
        except OSError as e:
            logger.debug(f"Could not discard request body from {self.address_string()}: {e}")
        finally:
            self.connection.settimeout(None)

    def _fail(self, record: ExchangeRecord, error: FaultInjectorError) -> None:
        record.error = str(error)
        record.duration_ms = (time.time() - record.timestamp) * 1000
        self.close_connection = True
        self.server._fault_proxy._record(record)  # type: ignore


# ── Proxy Servers ────────────────────────────────────────────────────────────

class _FaultProxyServer(ThreadingTCPServer):
    """Threaded TCP server with fault proxy reference."""
    allow_reuse_address = True
    daemon_threads = True
    scheme = "http"

    def __init__(self, addr, handler, engine: "FaultProxy"):
        self._fault_proxy = engine
        super().__init__(addr, handler)

    @property
    def port(self) -> int:
        return self.server_address[1]

    def handle_error(self, request, client_address):
        logger.exception(f"Error while handling connection from {client_address[0]}:{client_address[1]}")


class _TLSFaultProxyServer(_FaultProxyServer):
    """Threaded TCP server that terminates TLS on accepted connections.

    The handshake runs in the handler thread so a slow client cannot stall
    the accept loop.
    """
    scheme = "https"

    def __init__(self, addr, handler, engine: "FaultProxy", ssl_context: ssl.SSLContext):
        self.ssl_context = ssl_context
        super().__init__(addr, handler, engine)

    def get_request(self):
        sock, addr = super().get_request()
        return self.ssl_context.wrap_socket(sock, server_side=True, do_handshake_on_connect=False), addr


def build_server_ssl_context(
    cert_file: str,
    key_file: Optional[str] = None,
    password: Optional[str] = None,
) -> ssl.SSLContext:
    """Server-side TLS context from a PEM certificate chain and private key."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(cert_file, key_file or None, password or None)
    return ctx


# ── Fault Proxy Engine ───────────────────────────────────────────────────────

class FaultProxy:
    """
    Interactive fault-injection proxy.

    Start/stop the listeners, and keep the history and statistics of every
    handled exchange. Thread-safe for concurrent request handling.
    """

    def __init__(
        self,
        relay: Optional[UpstreamRelay] = None,
        desk: Optional[OperatorDesk] = None,
    ):
        self.relay = relay or UpstreamRelay()
        self.desk = desk or OperatorDesk(ConsoleCommandSource())
        self.shutdown_event = threading.Event()
        self._history: List[ExchangeRecord] = []
        self._lock = threading.Lock()
        self._id_counter = 0
        self._servers: List[_FaultProxyServer] = []
        self._threads: List[threading.Thread] = []
        self.host: str = "127.0.0.1"
        self.http_port: Optional[int] = None
        self.https_port: Optional[int] = None
        self.is_running: bool = False
        self._callbacks: List[Callable[[ExchangeRecord], None]] = []
        self._start_time: float = 0

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(
        self,
        http_port: int = 7777,
        https_port: Optional[int] = None,
        host: str = "127.0.0.1",
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> Dict[str, Any]:
        """Start the listeners.

        Args:
            http_port: Plain HTTP port (0 picks a free port).
            https_port: TLS port; requires ``ssl_context``. ``None`` disables it.
            host: Interface to bind.
            ssl_context: Server TLS context for the HTTPS listener.

        Returns:
            Status dict with ports and listener URLs.
        """
        if self.is_running:
            return {"ok": False, "error": f"Proxy already running on {', '.join(self.listeners)}"}
        if https_port is not None and ssl_context is None:
            return {"ok": False, "error": "HTTPS listener requires a certificate"}

        self.shutdown_event = threading.Event()
        servers: List[_FaultProxyServer] = []
        try:
            servers.append(_FaultProxyServer((host, http_port), _FaultProxyHandler, self))
            if https_port is not None:
                servers.append(
                    _TLSFaultProxyServer((host, https_port), _FaultProxyHandler, self, ssl_context)
                )
        except OSError as e:
            for server in servers:
                server.server_close()
            return {"ok": False, "error": f"Cannot bind {host}: {e}"}

        self.host = host
        self._servers = servers
        self.http_port = servers[0].port
        self.https_port = servers[1].port if len(servers) > 1 else None
        self._threads = []
        for server in servers:
            thread = threading.Thread(
                target=server.serve_forever,
                daemon=True,
                name=f"faultinjector-{server.scheme}-{server.port}",
            )
            thread.start()
            self._threads.append(thread)

        self.is_running = True
        self._start_time = time.time()
        for url in self.listeners:
            logger.info(f"Listening on {url}")
        return {
            "ok": True,
            "http_port": self.http_port,
            "https_port": self.https_port,
            "listeners": self.listeners,
            "message": f"Fault proxy listening on {', '.join(self.listeners)}",
            "curl_example": f"curl -x http://{_display_host(host)}:{self.http_port} http://example.com",
        }

    def stop(self) -> Dict[str, Any]:
        """Stop the listeners and release every request still waiting.

        Returns:
            Status dict with session stats.
        """
        if not self.is_running:
            return {"ok": False, "error": "Proxy is not running"}

        self.shutdown_event.set()
        for server in self._servers:
            try:
                server.shutdown()
                server.server_close()
            except Exception as e:
                logger.debug(f"Error during proxy shutdown: {e}")

        self.is_running = False
        uptime = time.time() - self._start_time

        stats = self.get_stats()
        stats["ok"] = True
        stats["uptime_seconds"] = round(uptime, 1)
        stats["message"] = "Proxy stopped"
        self._servers = []
        logger.info("Proxy stopped")
        return stats

    @property
    def listeners(self) -> List[str]:
        host = _display_host(self.host)
        urls = []
        if self.http_port is not None:
            urls.append(f"http://{host}:{self.http_port}")
        if self.https_port is not None:
            urls.append(f"https://{host}:{self.https_port}")
        return urls

    # ── Recording ────────────────────────────────────────────────────────

    def _next_id(self) -> int:
        with self._lock:
            self._id_counter += 1
            return self._id_counter

    def _record(self, record: ExchangeRecord) -> None:
        """Record a handled exchange (thread-safe)."""
        with self._lock:
            self._history.append(record)

        for cb in self._callbacks:
            try:
                cb(record)
            except Exception as e:
                logger.debug(f"Callback error: {e}")

    def on_exchange(self, callback: Callable[[ExchangeRecord], None]) -> None:
        """Register a callback for handled exchanges."""
        self._callbacks.append(callback)

    # ── History ──────────────────────────────────────────────────────────

    def get_history(self, limit: Optional[int] = None) -> List[ExchangeRecord]:
        """Handled exchanges, most recent first."""
        with self._lock:
            history = list(self._history)
        history.reverse()
        if limit:
            history = history[:limit]
        return history

    def get_stats(self) -> Dict[str, Any]:
        """Get session statistics."""
        with self._lock:
            total = len(self._history)
            modes: Dict[str, int] = {}
            outcomes: Dict[str, int] = {}
            status_codes: Dict[str, int] = {}
            upstream_bytes = 0
            delivered_bytes = 0
            total_duration = 0.0

            for r in self._history:
                if r.token:
                    modes[r.token] = modes.get(r.token, 0) + 1
                if r.outcome:
                    outcomes[r.outcome] = outcomes.get(r.outcome, 0) + 1
                if r.status_code:
                    bucket = f"{r.status_code // 100}xx"
                    status_codes[bucket] = status_codes.get(bucket, 0) + 1
                upstream_bytes += r.upstream_size
                delivered_bytes += r.delivered_bytes
                total_duration += r.duration_ms

        return {
            "is_running": self.is_running,
            "listeners": self.listeners if self.is_running else [],
            "total_requests": total,
            "total_upstream_bytes": upstream_bytes,
            "total_delivered_bytes": delivered_bytes,
            "modes": modes,
            "outcomes": outcomes,
            "status_codes": status_codes,
            "avg_duration_ms": round(total_duration / total, 1) if total else 0,
        }


def _display_host(host: str) -> str:
    if host in ("", "0.0.0.0"):
        return "127.0.0.1"
    if ":" in host:
        return f"[{host}]"
    return host


# ── Module-Level Singleton ───────────────────────────────────────────────────

_fault_proxy: Optional[FaultProxy] = None


def get_fault_proxy() -> FaultProxy:
    """Get or create the global fault proxy singleton."""
    global _fault_proxy
    if _fault_proxy is None:
        _fault_proxy = FaultProxy()
    return _fault_proxy


def reset_fault_proxy() -> None:
    """Reset the global fault proxy (for testing)."""
    global _fault_proxy
    if _fault_proxy and _fault_proxy.is_running:
        _fault_proxy.stop()
    _fault_proxy = None
