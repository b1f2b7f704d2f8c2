"""
Operator command channel.

The console is one process-wide resource shared by every request handler
thread. ``OperatorDesk`` turns it into a single-consumer channel: a request
holds the desk for its whole menu/prompt/selection cycle, so concurrent
requests queue up and are decided one at a time, and every prompt carries
the request id it belongs to.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional, Sequence

from rich.console import Console
from rich.markup import escape

from faultinjector import ui
from faultinjector.core.errors import OperatorUnavailable, UnrecognizedCommand
from faultinjector.core.faults import FAULT_MODES, DeliveryPlan, FaultMode, resolve
from faultinjector.core.relay import CapturedResponse

logger = logging.getLogger(__name__)


class CommandSource:
    """Yields one line of operator input per call."""

    def read_command(self, prompt: str) -> str:
        raise NotImplementedError


class ConsoleCommandSource(CommandSource):
    """Reads commands from the terminal."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or ui.console

    def read_command(self, prompt: str) -> str:
        try:
            return self.console.input(f"[prompt]{escape(prompt)}[/]")
        except EOFError as e:
            raise OperatorUnavailable("Console input is closed") from e


class ScriptedCommandSource(CommandSource):
    """Replays a fixed sequence of commands (automation and tests)."""

    def __init__(self, commands: Iterable[str]):
        self._commands = iter(commands)
        self._lock = threading.Lock()
        self.prompts: list = []

    def read_command(self, prompt: str) -> str:
        with self._lock:
            self.prompts.append(prompt)
            try:
                return next(self._commands)
            except StopIteration:
                raise OperatorUnavailable("No scripted commands left") from None


class OperatorDesk:
    """Serializes fault-mode decisions across concurrent requests."""

    def __init__(
        self,
        source: CommandSource,
        modes: Sequence[FaultMode] = FAULT_MODES,
        show_menu: bool = True,
    ):
        self.source = source
        self.modes = modes
        self.show_menu = show_menu
        self._lock = threading.Lock()

    def choose(self, response: CapturedResponse, request_id: int, summary: str = "") -> DeliveryPlan:
        """Ask the operator how to deliver ``response``.

        Invalid input is reported and re-prompted; the captured response is
        never touched.

        Raises:
            OperatorUnavailable: the command source is exhausted.
        """
        with self._lock:
            if self.show_menu:
                ui.show_fault_menu(self.modes, request_id, summary or response.get_summary())

            while True:
                line = self.source.read_command(f"[#{request_id}] > ")
                token = line.rstrip("\r\n")
                try:
                    plan = resolve(token, response.body_length)
                except UnrecognizedCommand as e:
                    logger.warning(f"[#{request_id}] {e}")
                    if self.show_menu:
                        ui.print_warning(escape(str(e)))
                    continue

                logger.info(f"[#{request_id}] Selected {plan.describe()}")
                return plan
