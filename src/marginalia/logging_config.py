"""
Logging configuration for marginalia.

Library chatter (httpx request lines) is hidden by default; --verbose turns
on debug output for everything.
"""

import logging
import sys


def configure_quiet_mode():
    """Only show warnings from marginalia and its HTTP stack."""
    logging.getLogger("marginalia").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("marginalia", "httpx"):
        logging.getLogger(name).setLevel(logging.DEBUG)
    # httpcore is very noisy even when debugging
    logging.getLogger("httpcore").setLevel(logging.INFO)
