from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler, SysLogHandler
from pathlib import Path

VERBOSE = 15
logging.addLevelName(VERBOSE, "VERBOSE")

ROOT_LOGGER_NAME = "Multi"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
SYSLOG_IDENT = "dnscrypt-proxy-multi"
_LOG_BYTES = 5 * 1024 * 1024
_LOG_BACKUPS = 5


def resolve_level(*, verbose: bool = False, debug: bool = False) -> int:
    if debug:
        return logging.DEBUG
    if verbose:
        return VERBOSE
    return logging.INFO


def setup_logging(
    *,
    verbose: bool = False,
    debug: bool = False,
    syslog: bool = False,
    syslog_prefix: str = "",
    syslog_address: str = "/dev/log",
) -> logging.Logger:
    """Configure the ``Multi`` logger hierarchy with console and syslog sinks."""

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(resolve_level(verbose=verbose, debug=debug))
    root.propagate = False
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if syslog:
        syslog_handler = SysLogHandler(address=syslog_address)
        prefix = syslog_prefix.replace("%", "%%")
        syslog_handler.setFormatter(
            logging.Formatter(
                f"{SYSLOG_IDENT}[%(process)d]: {prefix}%(levelname)s - %(message)s"
            )
        )
        root.addHandler(syslog_handler)

    return root


def add_file_handler(log_file: Path, *, overwrite: bool = False) -> logging.Handler:
    """Send the ``Multi`` hierarchy to ``log_file``; append unless ``overwrite``."""

    if overwrite:
        handler: logging.Handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    else:
        handler = RotatingFileHandler(
            log_file,
            maxBytes=_LOG_BYTES,
            backupCount=_LOG_BACKUPS,
            encoding="utf-8",
        )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger(ROOT_LOGGER_NAME).addHandler(handler)
    return handler
