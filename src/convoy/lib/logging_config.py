"""Logging setup for the Convoy CLI.

Library modules log through ``logging.getLogger(__name__)``; only the CLI
configures handlers.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are chatty at INFO/DEBUG
_NOISY_LOGGERS = ("httpx", "httpcore", "docker", "urllib3")


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logging for a CLI invocation.

    Args:
        verbose: Enable DEBUG level output
        quiet: Only show warnings and errors
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger."""
    return logging.getLogger(name)
