"""
Response Delivery Engine
========================
Writes a captured response to the client according to a DeliveryPlan, then
hands the connection to the terminator.

Status line and headers are always written in full. The body is cut to the
plan's byte count; a short body is the simulated failure, so it is never
padded or retried.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

from faultinjector.core.errors import ConnectionLost
from faultinjector.core.faults import DeliveryPlan
from faultinjector.core.relay import CapturedResponse
from faultinjector.core.terminator import ClientConnection, terminate

logger = logging.getLogger(__name__)


class ResponseSerializer(Protocol):
    """The subset of ``BaseHTTPRequestHandler`` used to put a response head on the wire."""

    def send_response_only(self, code: int, message: Optional[str] = None) -> None: ...

    def send_header(self, keyword: str, value: str) -> None: ...

    def end_headers(self) -> None: ...


def _may_have_body(status_code: int, request_method: str) -> bool:
    if request_method.upper() == "HEAD":
        return False
    return not (100 <= status_code < 200 or status_code in (204, 304))


def deliver(
    response: CapturedResponse,
    plan: DeliveryPlan,
    serializer: ResponseSerializer,
    connection: ClientConnection,
    request_method: str = "GET",
    request_id: Optional[int] = None,
    on_written: Optional[Callable[[int], None]] = None,
) -> int:
    """Deliver ``response`` as described by ``plan``.

    Args:
        response: The captured upstream response.
        plan: The operator's resolved choice.
        serializer: Writes the status line and header block.
        connection: The client connection, used for the body and termination.
        request_method: Method of the client request (HEAD has no body).
        request_id: Optional id used to tag log lines.
        on_written: Called with the body byte count before the connection
            action runs (a ``wait`` action never returns).

    Returns:
        Number of body bytes written.

    Raises:
        ConnectionLost: the client disconnected before delivery finished.
    """
    tag = f"[#{request_id}] " if request_id is not None else ""
    count = min(plan.byte_count, response.body_length)

    logger.info(f"{tag}Sending downstream response...")
    logger.info(f"{tag}StatusCode: {response.status_code}")
    logger.info(f"{tag}Headers:")

    try:
        serializer.send_response_only(response.status_code, response.reason or None)
        for name, value in response.headers:
            logger.info(f"{tag}  {name}:{value}")
            serializer.send_header(name, value)
        if not response.has_header("Content-Length") and _may_have_body(response.status_code, request_method):
            # Advertise the full length so a short body reads as truncated
            logger.info(f"{tag}  Content-Length:{response.body_length} (added)")
            serializer.send_header("Content-Length", str(response.body_length))
        serializer.end_headers()
    except OSError as e:
        raise ConnectionLost(f"Client disconnected while sending headers: {e}") from e

    if plan.is_truncated:
        logger.info(f"{tag}Writing response body of {count} of {response.body_length} bytes...")
    else:
        logger.info(f"{tag}Writing response body of {count} bytes...")
    if count:
        connection.write(response.body[:count])
    connection.flush()
    logger.info(f"{tag}Finished writing response body")

    if on_written is not None:
        on_written(count)
    terminate(connection, plan.action)
    return count
