from __future__ import annotations

import logging
import logging.handlers
import os
import subprocess
import sys
from pathlib import Path

LOGGER_NAME = "ups_watchdog"
CORE_TAG = "UPS_Monitor_Core"

SYNOLOGSET = Path("/usr/syno/bin/synologset1")
SYSLOG_SOCKETS = ("/dev/log", "/var/run/syslog")


class SynologyHandler(logging.Handler):
    """Write records to the DSM system log through ``synologset1``."""

    EVENT_ID = "0x11100000"

    def __init__(self, binary: Path = SYNOLOGSET):
        super().__init__()
        self._binary = str(binary)

    @staticmethod
    def severity(levelno: int) -> str:
        if levelno >= logging.ERROR:
            return "err"
        if levelno >= logging.WARNING:
            return "warn"
        return "info"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            subprocess.run(  # noqa: S603
                [self._binary, "sys", self.severity(record.levelno), self.EVENT_ID, msg],
                check=False,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except Exception:
            self.handleError(record)


def _syslog_handler(tag: str) -> logging.Handler | None:
    for address in SYSLOG_SOCKETS:
        if not os.path.exists(address):
            continue
        try:
            handler = logging.handlers.SysLogHandler(
                address=address, facility=logging.handlers.SysLogHandler.LOG_USER
            )
        except OSError:
            continue
        handler.ident = f"{tag}: "
        return handler
    return None


def _sink(tag: str) -> logging.Handler:
    if SYNOLOGSET.is_file() and os.access(SYNOLOGSET, os.X_OK):
        return SynologyHandler()
    handler = _syslog_handler(tag)
    if handler is not None:
        return handler
    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(logging.Formatter(f"{tag}: %(levelname)s %(message)s"))
    return stream


def setup_logging(tag: str = CORE_TAG, verbose: bool = False) -> logging.Logger:
    """(Re)install the log sink for ``tag`` on the package logger.

    Safe to call twice: the startup tag is swapped for the configured one
    once the local config has been read.
    """

    logger = logging.getLogger(LOGGER_NAME)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    sink = _sink(tag)
    if sink.formatter is None:
        sink.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(sink)

    if verbose and not isinstance(sink, logging.StreamHandler):
        echo = logging.StreamHandler(sys.stderr)
        echo.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(echo)
    return logger
