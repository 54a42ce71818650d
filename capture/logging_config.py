"""
Logging configuration for the capture pipeline.

Quiet by default: HTTP and LLM client libraries are noisy at INFO.
"""

import logging
import sys
import warnings

# Library loggers that chatter about every request
_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "PIL", "urllib3")


def configure_quiet_mode(quiet: bool = True):
    """
    Suppress verbose library output.

    Args:
        quiet: If True, silence library warnings and request logging.
            If False, leave library loggers at their defaults.
    """
    if not quiet:
        return
    warnings.filterwarnings("ignore")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("capture",) + _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a capture store.

    Writes to {store_path}/capture-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    from logging.handlers import RotatingFileHandler
    from pathlib import Path

    log_path = Path(store_path) / "capture-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    capture_logger = logging.getLogger("capture")
    capture_logger.addHandler(handler)
    # INFO must reach the ops log even in quiet mode
    if capture_logger.level == logging.NOTSET or capture_logger.level > logging.INFO:
        capture_logger.setLevel(logging.INFO)

    return handler
