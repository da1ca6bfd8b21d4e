"""Application logger writing prefixed, microsecond-stamped lines."""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import TextIO

_PREFIX = "fn-cloudsync "


class _StdFormatter(logging.Formatter):
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        return datetime.fromtimestamp(record.created).strftime("%Y/%m/%d %H:%M:%S.%f")


def new_logger(stream: TextIO | None = None) -> logging.Logger:
    """Return a fresh logger writing to stream (standard output by default)."""
    handler = logging.StreamHandler(sys.stdout if stream is None else stream)
    handler.setFormatter(_StdFormatter(_PREFIX + "%(asctime)s %(message)s"))
    logger = logging.Logger("fncloudsync", logging.INFO)
    logger.addHandler(handler)
    logger.propagate = False
    return logger