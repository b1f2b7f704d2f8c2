"""
Connection Terminator
=====================
The last step of every delivery: decides how the client connection ends.

  • wait   – block forever, socket left open (a hung server)
  • close  – flush, send FIN, release the socket (clean but premature close)
  • abort  – SO_LINGER {on, 0} then release the socket, the peer sees RST

Closing a socket only releases the descriptor once every file object made
from it is closed, so both ``close`` and ``abort`` drop the handler's
read/write files first.
"""

from __future__ import annotations

import logging
import socket
import struct
import threading
from typing import BinaryIO, Optional

from faultinjector.core.errors import ConnectionLost
from faultinjector.core.faults import ConnectionAction

logger = logging.getLogger(__name__)

_LINGER_RESET = struct.pack("ii", 1, 0)


class ClientConnection:
    """The downstream byte stream plus the socket needed to choose FIN or RST."""

    def __init__(
        self,
        sock: socket.socket,
        rfile: Optional[BinaryIO] = None,
        wfile: Optional[BinaryIO] = None,
        shutdown_event: Optional[threading.Event] = None,
    ):
        self.sock = sock
        self.rfile = rfile
        self.wfile = wfile if wfile is not None else sock.makefile("wb", buffering=0)
        # Only set by a process-level shutdown
        self.shutdown_event = shutdown_event or threading.Event()
        self.closed = False
        self.aborted = False
        self.bytes_written = 0

    @property
    def peer(self) -> str:
        try:
            host, port = self.sock.getpeername()[:2]
            return f"{host}:{port}"
        except OSError:
            return "?"

    # ── Writing ──────────────────────────────────────────────────────────

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionLost("Connection already closed")
        try:
            self.wfile.write(data)
            self.bytes_written += len(data)
        except OSError as e:
            raise ConnectionLost(f"Client disconnected: {e}") from e

    def flush(self) -> None:
        if self.closed:
            return
        try:
            self.wfile.flush()
        except OSError as e:
            raise ConnectionLost(f"Client disconnected: {e}") from e

    # ── Termination ──────────────────────────────────────────────────────

    def wait_forever(self) -> None:
        """Suspend until the process shuts down. No timeout."""
        self.shutdown_event.wait()

    def close(self) -> None:
        """Graceful close: flush pending data, send FIN, release the socket."""
        if self.closed:
            return
        try:
            self.flush()
            self.sock.shutdown(socket.SHUT_WR)
        except (ConnectionLost, OSError) as e:
            logger.debug(f"Graceful close of {self.peer} after peer loss: {e}")
        finally:
            self._release()

    def abort(self) -> None:
        """Abortive close: discard unsent data and reset the connection."""
        if self.closed:
            return
        try:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, _LINGER_RESET)
        except OSError as e:
            logger.debug(f"Could not set SO_LINGER on {self.peer}: {e}")
        self.aborted = True
        self._release()

    def _release(self) -> None:
        self.closed = True
        for f in (self.wfile, self.rfile):
            if f is None:
                continue
            try:
                f.close()
            except OSError:
                # Writer flush on a reset socket
                pass
        self.sock.close()


def terminate(connection: ClientConnection, action: ConnectionAction) -> None:
    """Apply a connection action after the body has been written."""
    if action is ConnectionAction.COMPLETE:
        connection.flush()
    elif action is ConnectionAction.WAIT:
        logger.info(f"Waiting indefinitely on {connection.peer}...")
        connection.flush()
        connection.wait_forever()
    elif action is ConnectionAction.CLOSE:
        logger.info(f"Closing connection to {connection.peer} (TCP FIN)")
        connection.close()
    elif action is ConnectionAction.ABORT:
        logger.info(f"Aborting connection to {connection.peer} (TCP RST)")
        connection.abort()
    else:
        raise ValueError(f"Unknown connection action: {action!r}")
