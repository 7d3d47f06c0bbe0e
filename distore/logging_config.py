"""Logging setup for the command line and the API server."""

import logging
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

# Chatty third-party loggers
QUIET_LOGGERS = ('aiohttp', 'asyncio', 'urllib3')


def setup_logging(verbose: bool = False, console: Optional[Console] = None,
                  level: Optional[str] = None):
    """Configure logging with rich output."""
    if verbose:
        resolved = logging.DEBUG
    else:
        name = (level or os.getenv('DISTORE_LOG_LEVEL', 'INFO')).upper()
        resolved = getattr(logging, name, logging.INFO)

    logging.basicConfig(
        level=resolved,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
