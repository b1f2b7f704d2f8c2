"""
Logging configuration.

Console output goes through ``rich`` (sharing the operator console, so log
lines and fault menus do not garble each other); a rotating file keeps the
full diagnostic trace of every exchange.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from rich.logging import RichHandler

from faultinjector.ui import console

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)-7s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"


def setup_logging(level: Union[str, int] = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure application logging.

    Args:
        level: Logging level name (e.g. INFO, DEBUG) or number.
        log_file: Optional path of a rotating log file.
    """
    if isinstance(level, str):
        lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    else:
        lvl = level

    root = logging.getLogger()
    root.setLevel(lvl)

    # Avoid duplicate handlers (e.g. reload/tests)
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    rich_handler = RichHandler(
        console=console,
        show_path=False,
        rich_tracebacks=True,
        log_time_format="[%H:%M:%S.%f]",
        markup=False,
    )
    rich_handler.setLevel(lvl)
    root.addHandler(rich_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        file_handler.setLevel(lvl)
        root.addHandler(file_handler)

    # Quiet third-party noise
    logging.getLogger("urllib3").setLevel(logging.WARNING)
