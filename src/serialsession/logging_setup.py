"""Logging configuration for the serialsession CLI and gateway daemon."""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(verbose: bool = False) -> None:
    """Send log records to stderr; DEBUG when verbose, WARNING otherwise."""
    level = logging.DEBUG if verbose else logging.WARNING

    logger = logging.getLogger()
    logger.setLevel(level)

    # Avoid duplicate handlers when called twice
    for handler in list(logger.handlers):
        if getattr(handler, "_serialsession", False):
            logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    console_handler._serialsession = True  # type: ignore[attr-defined]
    logger.addHandler(console_handler)
