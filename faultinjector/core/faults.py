"""
Fault Mode Resolver
===================
Maps the operator's command token to a ``DeliveryPlan``: how much of the
captured body to write and what to do with the client connection afterwards.

The table below is the whole fault taxonomy; no other combination is
reachable.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from faultinjector.core.errors import UnrecognizedCommand


class BodyChoice(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class ConnectionAction(str, Enum):
    """What happens to the client connection once the body is written."""
    COMPLETE = "complete"   # normal HTTP completion, keep-alive rules apply
    WAIT = "wait"           # hang forever, socket stays open
    CLOSE = "close"         # graceful close (TCP FIN)
    ABORT = "abort"         # abortive close (TCP RST)


@dataclass(frozen=True)
class FaultMode:
    token: str
    body: BodyChoice
    action: ConnectionAction
    description: str


@dataclass(frozen=True)
class DeliveryPlan:
    """Resolved (body truncation, connection action) pair for one response."""
    token: str
    body: BodyChoice
    byte_count: int
    action: ConnectionAction

    @property
    def is_truncated(self) -> bool:
        return self.body is not BodyChoice.FULL

    def describe(self) -> str:
        return f"{self.token}: {self.body.value} ({self.byte_count} bytes), then {self.action.value}"


FAULT_MODES: Tuple[FaultMode, ...] = (
    FaultMode("f", BodyChoice.FULL, ConnectionAction.COMPLETE,
              "Full response"),
    FaultMode("p", BodyChoice.PARTIAL, ConnectionAction.WAIT,
              "Partial Response (full headers, 50% of body), then wait indefinitely"),
    FaultMode("pc", BodyChoice.PARTIAL, ConnectionAction.CLOSE,
              "Partial Response (full headers, 50% of body), then close (TCP FIN)"),
    FaultMode("pa", BodyChoice.PARTIAL, ConnectionAction.ABORT,
              "Partial Response (full headers, 50% of body), then abort (TCP RST)"),
    FaultMode("n", BodyChoice.NONE, ConnectionAction.WAIT,
              "No response body, then wait indefinitely"),
    FaultMode("nc", BodyChoice.NONE, ConnectionAction.CLOSE,
              "No response body, then close (TCP FIN)"),
    FaultMode("na", BodyChoice.NONE, ConnectionAction.ABORT,
              "No response body, then abort (TCP RST)"),
)

_MODES_BY_TOKEN: Dict[str, FaultMode] = {m.token: m for m in FAULT_MODES}


def get_fault_mode(token: str) -> FaultMode:
    """Look up a fault mode by its exact (case-sensitive) token."""
    try:
        return _MODES_BY_TOKEN[token]
    except KeyError:
        raise UnrecognizedCommand(token) from None


def resolve(token: str, body_length: int) -> DeliveryPlan:
    """Turn an operator token and the captured body length into a plan.

    Args:
        token: One of the ``FAULT_MODES`` tokens, matched exactly.
        body_length: Length of the captured response body in bytes.

    Returns:
        The DeliveryPlan for this response.

    Raises:
        UnrecognizedCommand: the token is not in the vocabulary.
    """
    mode = get_fault_mode(token)

    if mode.body is BodyChoice.FULL:
        return DeliveryPlan(token, BodyChoice.FULL, body_length, mode.action)

    if mode.body is BodyChoice.PARTIAL:
        count = body_length // 2
        if count > 0:
            return DeliveryPlan(token, BodyChoice.PARTIAL, count, mode.action)

    # Partial of an empty (or 1-byte) body has nothing to send
    return DeliveryPlan(token, BodyChoice.NONE, 0, mode.action)
