"""Shared fixtures: a local upstream HTTP server and connected TCP socket pairs."""

import datetime
import gzip
import ipaddress
import socket
import ssl
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

GZIP_PAYLOAD = gzip.compress(b"compressed hello " * 20)


class _UpstreamHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def _remember(self, body: bytes) -> None:
        self.server.received.append({
            "method": self.command,
            "path": self.path,
            "headers": list(self.headers.items()),
            "body": body,
        })

    def _respond(self, status: int, body: bytes, headers=None) -> None:
        self.send_response(status)
        for name, value in headers or []:
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _handle(self):
        length = int(self.headers.get("Content-Length", 0) or 0)
        body = self.rfile.read(length) if length else b""
        self._remember(body)

        if self.path.startswith("/status/200"):
            self._respond(200, b"OK", [("Content-Type", "text/plain")])
        elif self.path.startswith("/echo"):
            self._respond(200, body, [("Content-Type", self.headers.get("Content-Type", "application/octet-stream"))])
        elif self.path == "/chunked":
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Transfer-Encoding", "chunked")
            self.end_headers()
            for chunk in (b"hello ", b"chunked ", b"world"):
                self.wfile.write(f"{len(chunk):x}\r\n".encode() + chunk + b"\r\n")
            self.wfile.write(b"0\r\n\r\n")
        elif self.path == "/cookies":
            self._respond(200, b"cookies", [("Set-Cookie", "a=1"), ("Set-Cookie", "b=2"), ("X-Trace", "t1")])
        elif self.path == "/gzip":
            self._respond(200, GZIP_PAYLOAD, [("Content-Encoding", "gzip"), ("Content-Type", "text/plain")])
        elif self.path == "/redirect":
            self._respond(302, b"", [("Location", "/status/200")])
        elif self.path == "/slow":
            time.sleep(1.5)
            self._respond(200, b"late")
        elif self.path == "/empty":
            self._respond(200, b"")
        else:
            self._respond(404, b"not found")

    do_GET = do_POST = do_PUT = do_DELETE = do_HEAD = do_PATCH = _handle


def _serve(server):
    server.daemon_threads = True
    server.received = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def upstream():
    """A threaded HTTP/1.1 server that records every request it receives."""
    yield from _serve(ThreadingHTTPServer(("127.0.0.1", 0), _UpstreamHandler))


@pytest.fixture(scope="session")
def tls_cert(tmp_path_factory):
    """A throwaway self-signed PEM certificate and key for localhost / 127.0.0.1."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=1))
            .add_extension(x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]), critical=False)
            .sign(key, hashes.SHA256()))

    directory = tmp_path_factory.mktemp("tls")
    cert_file = directory / "cert.pem"
    key_file = directory / "key.pem"
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    return str(cert_file), str(key_file)


@pytest.fixture
def tls_upstream(tls_cert):
    """Same as ``upstream``, spoken over TLS with the throwaway certificate."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(*tls_cert)
    server = ThreadingHTTPServer(("127.0.0.1", 0), _UpstreamHandler)
    server.socket = ctx.wrap_socket(server.socket, server_side=True)
    yield from _serve(server)


@pytest.fixture
def garbage_upstream():
    """A TCP server that answers every connection with something that is not HTTP."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(5)
    stop = threading.Event()

    def serve():
        listener.settimeout(0.2)
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                continue
            try:
                conn.recv(65536)
                conn.sendall(b"this is not http\r\n\r\n")
            finally:
                conn.close()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield listener.getsockname()[1]
    finally:
        stop.set()
        thread.join(timeout=2)
        listener.close()


@pytest.fixture
def closed_port():
    """A localhost port nobody listens on."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def tcp_pair():
    """A connected (server_side, client_side) pair of real TCP sockets."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    client = socket.create_connection(listener.getsockname(), timeout=5)
    server, _ = listener.accept()
    listener.close()
    try:
        yield server, client
    finally:
        for s in (server, client):
            try:
                s.close()
            except OSError:
                pass


def _read_until_end(sock: socket.socket, timeout: float = 5.0):
    """Read until EOF or reset. Returns (data, how) with how in {"eof", "reset", "timeout"}."""
    sock.settimeout(timeout)
    chunks = []
    while True:
        try:
            data = sock.recv(65536)
        except ConnectionResetError:
            return b"".join(chunks), "reset"
        except socket.timeout:
            return b"".join(chunks), "timeout"
        if not data:
            return b"".join(chunks), "eof"
        chunks.append(data)


@pytest.fixture
def read_until_end():
    return _read_until_end
