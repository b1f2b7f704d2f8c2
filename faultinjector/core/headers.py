"""
Header classification for relayed requests.

Every incoming request header falls in exactly one class:

  • hop-only             – meaningful only between the client and this proxy, dropped
  • content-descriptive  – describes the body, attached to the outbound body
  • pass-through         – forwarded verbatim, order and multi-values preserved
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List, Sequence, Tuple

Header = Tuple[str, List[str]]


class HeaderClass(str, Enum):
    HOP_ONLY = "hop-only"
    CONTENT = "content-descriptive"
    PASS_THROUGH = "pass-through"


# Only applies to the request between client and proxy
HOP_ONLY_HEADERS: Tuple[str, ...] = (
    "Proxy-Connection",
)

# Must be set on the body representation instead of the message
CONTENT_HEADERS: Tuple[str, ...] = (
    "Content-Length",
    "Content-Type",
)

_HOP_ONLY = frozenset(h.lower() for h in HOP_ONLY_HEADERS)
_CONTENT = frozenset(h.lower() for h in CONTENT_HEADERS)


def classify_header(name: str) -> HeaderClass:
    """Return the class of a header name (case-insensitive)."""
    key = name.strip().lower()
    if key in _HOP_ONLY:
        return HeaderClass.HOP_ONLY
    if key in _CONTENT:
        return HeaderClass.CONTENT
    return HeaderClass.PASS_THROUGH


def partition_headers(
    headers: Iterable[Tuple[str, Sequence[str]]],
) -> Tuple[List[Header], List[Header]]:
    """Split headers into (content-descriptive, pass-through), dropping hop-only ones.

    Relative order is kept inside each group and every value of a
    multi-valued header stays attached to its name.
    """
    content: List[Header] = []
    passthrough: List[Header] = []
    for name, values in headers:
        kind = classify_header(name)
        if kind is HeaderClass.HOP_ONLY:
            continue
        target = content if kind is HeaderClass.CONTENT else passthrough
        target.append((name, list(values)))
    return content, passthrough
