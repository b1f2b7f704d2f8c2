"""
Upstream Relay
==============
Forwards an incoming request to the server it is addressed to and captures
the complete upstream response in memory.

  • The upstream URL is rebuilt from the request's own scheme/host/port/path/query
  • Hop-only headers are dropped, content headers ride on the body, the rest pass through
  • The response body is read raw (no content decoding) and fully materialized
  • ``Transfer-Encoding`` never survives capture, the body is redelivered length-delimited

The HTTP client is a shared ``requests.Session``. Environment proxy settings
are ignored so a client configured to use this proxy cannot loop back into
it, redirects are returned to the client instead of followed, and nothing is
retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from http.cookiejar import DefaultCookiePolicy
from typing import IO, Iterator, List, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from requests.utils import check_header_validity
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.exceptions import ProtocolError, ReadTimeoutError
from urllib3.util import SKIP_HEADER

from faultinjector.core.errors import (
    HeaderRejected,
    UpstreamProtocolError,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from faultinjector.core.headers import partition_headers

logger = logging.getLogger(__name__)

STRIPPED_RESPONSE_HEADERS = ("transfer-encoding",)

# Outbound bodies are always re-framed with Content-Length
STRIPPED_REQUEST_HEADERS = ("transfer-encoding",)

# Headers urllib3 / http.client add on their own unless told to skip them
_CLIENT_DEFAULT_HEADERS = ("Accept-Encoding", "User-Agent")

_READ_BLOCK_SIZE = 64 * 1024


# ── Data Models ──────────────────────────────────────────────────────────────

def build_upstream_url(
    scheme: str,
    host: str,
    port: Optional[int],
    path: str,
    query: str = "",
) -> str:
    """Compose the upstream URL, passing path and query through verbatim."""
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    authority = f"{host}:{port}" if port is not None else host
    if not path.startswith("/"):
        path = "/" + path
    url = f"{scheme.lower()}://{authority}{path}"
    if query:
        url += f"?{query.lstrip('?')}"
    return url


@dataclass
class IncomingRequest:
    """A request received from the downstream client."""
    method: str
    scheme: str
    host: str
    path: str
    port: Optional[int] = None
    query: str = ""
    headers: List[Tuple[str, List[str]]] = field(default_factory=list)
    body: Optional[IO[bytes]] = None

    @property
    def url(self) -> str:
        return build_upstream_url(self.scheme, self.host, self.port, self.path, self.query)

    def get_header(self, name: str) -> Optional[str]:
        """First value of a header, case-insensitive."""
        key = name.lower()
        for h, values in self.headers:
            if h.lower() == key and values:
                return values[0]
        return None

    @property
    def content_length(self) -> int:
        raw = self.get_header("Content-Length")
        if raw is None:
            return 0
        try:
            return max(int(raw.strip()), 0)
        except ValueError:
            return 0

    @property
    def has_unframed_body(self) -> bool:
        """A body is present that cannot be relayed (chunked or bad Content-Length).

        Such a body is never read, so the connection cannot be reused.
        """
        if self.get_header("Transfer-Encoding") is not None:
            return True
        raw = self.get_header("Content-Length")
        if raw is None:
            return False
        try:
            return int(raw.strip()) < 0
        except ValueError:
            return True

    @staticmethod
    def group_header_lines(lines: Sequence[Tuple[str, str]]) -> List[Tuple[str, List[str]]]:
        """Group raw header lines by name (case-insensitive), keeping first-seen order."""
        grouped: List[Tuple[str, List[str]]] = []
        index = {}
        for name, value in lines:
            key = name.lower()
            if key in index:
                grouped[index[key]][1].append(value)
            else:
                index[key] = len(grouped)
                grouped.append((name, [value]))
        return grouped


@dataclass(frozen=True)
class CapturedResponse:
    """A fully read upstream response.

    ``headers`` holds one entry per header line, in upstream order, with
    duplicates kept as separate entries.
    """
    status_code: int
    headers: Tuple[Tuple[str, str], ...]
    body: bytes
    reason: str = ""

    def __post_init__(self):
        for name, _ in self.headers:
            if name.lower() in STRIPPED_RESPONSE_HEADERS:
                raise ValueError(f"{name} cannot be part of a captured response")

    @property
    def body_length(self) -> int:
        return len(self.body)

    def header_values(self, name: str) -> List[str]:
        key = name.lower()
        return [v for h, v in self.headers if h.lower() == key]

    def has_header(self, name: str) -> bool:
        return bool(self.header_values(name))

    def get_summary(self) -> str:
        """One-line summary."""
        reason = f" {self.reason}" if self.reason else ""
        return f"{self.status_code}{reason} ({self.body_length}B, {len(self.headers)} headers)"


class BodyStream:
    """Outbound body representation: a bounded reader plus its content headers.

    Reports its length so the HTTP client sends a fixed-length body instead of
    falling back to chunked encoding.
    """

    def __init__(self, stream: IO[bytes], length: int):
        self._stream = stream
        self._remaining = length
        self.length = length
        self.headers: List[Tuple[str, str]] = []

    def add_header(self, name: str, values: Sequence[str]) -> None:
        self.headers.append((name, ", ".join(values)))

    def __len__(self) -> int:
        return self.length

    @property
    def remaining(self) -> int:
        return max(self._remaining, 0)

    def read(self, size: int = -1) -> bytes:
        if self._remaining <= 0:
            return b""
        if size is None or size < 0 or size > self._remaining:
            size = self._remaining
        data = self._stream.read(size)
        self._remaining -= len(data)
        return data

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(_READ_BLOCK_SIZE)
            if not chunk:
                return
            yield chunk


# ── Relay ────────────────────────────────────────────────────────────────────

class UpstreamRelay:
    """
    Sends incoming requests upstream and captures the responses.

    One instance (and its connection pool) is shared by every request
    handler; captured responses are never shared.
    """

    def __init__(
        self,
        verify_tls: bool = True,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            verify_tls: Verify upstream TLS certificates.
            timeout: Connect/read timeout in seconds, ``None`` waits forever.
            session: Pre-built session (tests); a fresh one is created otherwise.
        """
        self.verify_tls = verify_tls
        self.timeout = timeout
        self._session = session or self._create_session()

    @staticmethod
    def _create_session() -> requests.Session:
        session = requests.Session()
        session.trust_env = False
        session.headers.clear()
        # Cookies belong to the clients, never to the shared session
        session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        adapter = HTTPAdapter(max_retries=0, pool_maxsize=32)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def close(self) -> None:
        self._session.close()

    # ── Outbound request ─────────────────────────────────────────────────

    def build_request(self, request: IncomingRequest, request_id: Optional[int] = None) -> requests.PreparedRequest:
        """Build the prepared upstream request for an incoming request.

        Raises:
            HeaderRejected: a header value cannot be sent.
        """
        tag = _tag(request_id)
        url = request.url

        logger.info(f"{tag}Upstream Request")
        logger.info(f"{tag}URL: {url}")
        logger.info(f"{tag}Headers:")

        content, passthrough = partition_headers(request.headers)

        body: Optional[BodyStream] = None
        if request.content_length > 0 and request.body is not None:
            body = BodyStream(request.body, request.content_length)
            for name, values in content:
                logger.info(f"{tag}  {name}:{values[0] if values else ''}")
                body.add_header(name, values)

        outbound: List[Tuple[str, str]] = []
        for name, values in passthrough:
            if name.lower() in STRIPPED_REQUEST_HEADERS:
                continue
            logger.info(f"{tag}  {name}:{values[0] if values else ''}")
            outbound.append((name, ", ".join(values)))
        if body is not None:
            outbound.extend(body.headers)

        for name, value in outbound:
            try:
                check_header_validity((name, value))
            except requests.exceptions.InvalidHeader as e:
                raise HeaderRejected(name, value, str(e)) from e

        present = {name.lower() for name, _ in outbound}
        headers = dict(outbound)
        for name in _CLIENT_DEFAULT_HEADERS:
            if name.lower() not in present:
                headers[name] = SKIP_HEADER

        req = requests.Request(method=request.method, url=url, headers=headers, data=body)
        try:
            return self._session.prepare_request(req)
        except requests.exceptions.InvalidHeader as e:
            raise HeaderRejected("<unknown>", "", str(e)) from e
        except (requests.exceptions.InvalidURL,
                requests.exceptions.MissingSchema,
                requests.exceptions.InvalidSchema) as e:
            raise UpstreamUnreachable(url, str(e)) from e

    # ── Exchange ─────────────────────────────────────────────────────────

    def relay(self, request: IncomingRequest, request_id: Optional[int] = None) -> CapturedResponse:
        """Forward a request upstream and capture the whole response.

        Args:
            request: The incoming request.
            request_id: Optional id used to tag log lines.

        Returns:
            The CapturedResponse.

        Raises:
            HeaderRejected, UpstreamUnreachable, UpstreamTimeout, UpstreamProtocolError
        """
        tag = _tag(request_id)
        prepared = self.build_request(request, request_id)
        url = prepared.url or request.url
        start = time.time()

        logger.info(f"{tag}Sending request to upstream server...")
        try:
            resp = self._session.send(
                prepared,
                stream=True,
                allow_redirects=False,
                timeout=self.timeout,
                verify=self.verify_tls,
            )
        except requests.exceptions.Timeout as e:
            raise UpstreamTimeout(url, str(e)) from e
        except (requests.exceptions.ChunkedEncodingError,
                requests.exceptions.ContentDecodingError) as e:
            raise UpstreamProtocolError(url, str(e)) from e
        except requests.exceptions.ConnectionError as e:
            reason = e.args[0] if e.args else None
            if isinstance(reason, ProtocolError):
                raise UpstreamProtocolError(url, str(e)) from e
            raise UpstreamUnreachable(url, str(e)) from e
        except requests.exceptions.RequestException as e:
            raise UpstreamUnreachable(url, str(e)) from e

        try:
            return self._capture(resp, url, tag, start)
        finally:
            resp.close()

    def _capture(self, resp: requests.Response, url: str, tag: str, start: float) -> CapturedResponse:
        logger.info(f"{tag}Upstream Response")
        logger.info(f"{tag}StatusCode: {resp.status_code}")
        logger.info(f"{tag}Headers:")

        headers: List[Tuple[str, str]] = []
        for name, value in _response_header_lines(resp):
            logger.info(f"{tag}  {name}:{value}")
            if name.lower() in STRIPPED_RESPONSE_HEADERS:
                continue
            headers.append((name, value))

        logger.info(f"{tag}Reading upstream response body...")
        try:
            body = resp.raw.read(decode_content=False) or b""
        except ReadTimeoutError as e:
            raise UpstreamTimeout(url, str(e)) from e
        except (Urllib3HTTPError, OSError) as e:
            raise UpstreamProtocolError(url, str(e)) from e

        captured = CapturedResponse(
            status_code=resp.status_code,
            headers=tuple(headers),
            body=bytes(body),
            reason=resp.reason or "",
        )
        logger.info(f"{tag}ContentLength: {captured.body_length} "
                    f"({(time.time() - start) * 1000:.0f}ms)")
        return captured


def _response_header_lines(resp: requests.Response) -> List[Tuple[str, str]]:
    """Header lines of an upstream response, duplicates kept separate."""
    raw_headers = getattr(resp.raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "iteritems"):
        return list(raw_headers.iteritems())
    return list(resp.headers.items())


def _tag(request_id: Optional[int]) -> str:
    return f"[#{request_id}] " if request_id is not None else ""
