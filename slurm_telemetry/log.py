"""Logging setup using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "slurm_telemetry"

stderr_console = Console(stderr=True)


def choose_level(debug: bool = False, messages: bool = True, warnings: bool = True) -> int:
    """Map the verbosity switches to a logging level."""
    if debug:
        return logging.DEBUG
    if not warnings:
        return logging.ERROR
    if not messages:
        return logging.WARNING
    return logging.INFO


def setup_logging(debug: bool = False, messages: bool = True, warnings: bool = True) -> logging.Logger:
    """
    Attach a Rich handler to the package logger.

    Args:
        debug: Show debug output, including the function tracing lines.
        messages: Show informational messages.
        warnings: Show warnings. Errors are always shown.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(choose_level(debug, messages, warnings))

    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=stderr_console,
        show_path=debug,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    return logger
