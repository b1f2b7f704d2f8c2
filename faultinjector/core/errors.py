"""
Fault Injector Errors
=====================
Every failure raised while handling one proxied request inherits
``FaultInjectorError``. Failures are isolated to the request that raised
them; none of them stops the listeners.

  • Relay phase      – UpstreamUnreachable, UpstreamTimeout, UpstreamProtocolError
  • Request headers  – HeaderRejected
  • Operator input   – UnrecognizedCommand (recoverable), OperatorUnavailable
  • Delivery phase   – ConnectionLost
"""

from __future__ import annotations

from typing import Optional


class FaultInjectorError(Exception):
    """Base class for per-request failures.

    ``status_code`` is the response the proxy sends to the client when the
    connection is still usable, or ``None`` when nothing should be sent.
    """

    status_code: Optional[int] = None

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "Reason unknown")


class RelayError(FaultInjectorError):
    """The upstream exchange failed; no captured response exists."""

    status_code = 502

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"{self.__class__.__name__}: {url}: {reason}")


class UpstreamUnreachable(RelayError):
    """Connecting to or talking with the upstream host failed."""


class UpstreamTimeout(RelayError):
    """The upstream did not answer within the configured timeout."""

    status_code = 504


class UpstreamProtocolError(RelayError):
    """The upstream answered with something that is not valid HTTP."""


class HeaderRejected(FaultInjectorError):
    """A request header could not be attached to the upstream request."""

    status_code = 400

    def __init__(self, name: str, value: str, reason: str = ""):
        self.name = name
        self.value = value
        detail = f": {reason}" if reason else ""
        super().__init__(f"Could not add header {name} with value {value!r}{detail}")


class UnrecognizedCommand(FaultInjectorError):
    """The operator typed something outside the fault-mode vocabulary."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Invalid selection: {token}")


class OperatorUnavailable(FaultInjectorError):
    """The operator command source is exhausted (EOF on the console)."""


class ConnectionLost(FaultInjectorError):
    """The downstream client went away while the response was being delivered."""
