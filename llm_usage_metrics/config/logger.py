"""
Console logging setup for the command-line interface.

Library modules only create ``logging.getLogger(__name__)`` loggers; handlers
are installed here, once, by the CLI.
"""

import logging
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_LEVEL_ENV = "LLM_USAGE_LOG_LEVEL"

# Diagnostics go to stderr; stdout carries the report
stderr_console = Console(stderr=True)


def setup_logging(verbose: bool = False, console: Optional[Console] = None) -> None:
    if verbose:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, os.getenv(LOG_LEVEL_ENV, "INFO").upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console or stderr_console, show_path=False, markup=False)],
        force=True,
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
