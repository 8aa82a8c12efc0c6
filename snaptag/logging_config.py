"""
Logging configuration for snaptag.

Quiet by default on the command line; debug output on request; a
persistent operations log inside each store.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "snaptag-ops.log"


def configure_quiet_mode(quiet: bool = True):
    """
    Keep library output off the terminal.

    Args:
        quiet: If True, suppress warnings and INFO chatter. If False, leave
            logging as configured.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        logging.getLogger("snaptag").setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

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

    logging.getLogger("snaptag").setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a snaptag store.

    Writes to {store_path}/snaptag-ops.log using a rotating file handler
    (1MB max, 3 backups). Returns the handler so it can be removed on
    close().
    """
    log_path = Path(store_path) / OPS_LOG_FILENAME
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

    snaptag_logger = logging.getLogger("snaptag")
    snaptag_logger.addHandler(handler)
    # Ensure INFO reaches the ops log even in quiet mode
    if snaptag_logger.level == logging.NOTSET or snaptag_logger.level > logging.INFO:
        snaptag_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    logging.getLogger("snaptag").removeHandler(handler)
    handler.close()
