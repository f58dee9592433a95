"""
Logging setup for moodleaf.

Console output stays quiet unless asked for; what the pipeline decides
(claims, fail-over, backoff, dropped tasks) goes to a rotating ops log
inside the store directory.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

OPS_LOG_NAME = "moodleaf-ops.log"

# Provider SDKs and their HTTP stacks log every request at INFO
_CLIENT_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "urllib3")

_PIPELINE_LOGGER = "moodleaf"

_CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
# Worker threads are named by the scheduler, so the thread tells which pool ran a task
_OPS_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def configure_quiet_mode(quiet: bool = True):
    """Raise or restore the threshold of the provider client loggers."""
    level = logging.WARNING if quiet else logging.NOTSET
    for name in _CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(level)
    warnings.simplefilter("ignore" if quiet else "default")


def _has_console_handler(logger: logging.Logger) -> bool:
    return any(
        type(h) is logging.StreamHandler and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    )


def enable_debug_mode():
    """Send everything, library chatter included, to stderr."""
    configure_quiet_mode(quiet=False)
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if not _has_console_handler(root):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt="%H:%M:%S"))
        root.addHandler(console)
    logging.getLogger(_PIPELINE_LOGGER).setLevel(logging.DEBUG)


def configure_ops_log(
    store_path,
    max_bytes: int = 1_000_000,
    backups: int = 3,
) -> RotatingFileHandler:
    """Attach the store's ops log to the moodleaf logger.

    The log lives at {store_path}/moodleaf-ops.log and records INFO and
    above whether or not debug mode is on. The handler is returned so the
    owning Journal can detach it on close().
    """
    store_dir = Path(store_path)
    store_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        store_dir / OPS_LOG_NAME,
        maxBytes=max_bytes,
        backupCount=backups,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(_OPS_FORMAT))

    pipeline_logger = logging.getLogger(_PIPELINE_LOGGER)
    pipeline_logger.addHandler(handler)
    if not pipeline_logger.isEnabledFor(logging.INFO):
        pipeline_logger.setLevel(logging.INFO)
    return handler


def remove_ops_log(handler: Optional[logging.Handler]) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    logging.getLogger(_PIPELINE_LOGGER).removeHandler(handler)
    handler.close()
