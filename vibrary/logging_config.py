"""
Logging configuration for vibrary.

Quiet by default: the store records in the background and should not
chatter.  Maintenance activity always goes to a rotating operations log
inside the store directory.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "vibrary-ops.log"


def configure_quiet_mode(quiet: bool = True):
    """
    Keep library and vibrary console output to warnings and above.

    Args:
        quiet: If True, suppress verbose output. If False, leave logging alone.
    """
    if not quiet:
        return
    warnings.filterwarnings("ignore", category=DeprecationWarning)
    logging.getLogger("vibrary").setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("vibrary").setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a vibrary store.

    Writes to {store_path}/vibrary-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    store_dir = Path(store_path)
    store_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(store_dir / OPS_LOG_FILENAME),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    vibrary_logger = logging.getLogger("vibrary")
    vibrary_logger.addHandler(handler)
    # Ensure the vibrary logger allows INFO through even in quiet mode
    if vibrary_logger.level == logging.NOTSET or vibrary_logger.level > logging.INFO:
        vibrary_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    logging.getLogger("vibrary").removeHandler(handler)
    handler.close()
