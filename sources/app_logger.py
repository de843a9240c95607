# app_logger.py
"""
A small wrapper around the standard library `logging` module.
Every component of the survey client imports `logger` from here, so we have
a single source of truth for log configuration: the console reads the
in-memory buffer, the log file keeps everything down to DEBUG.
"""

import logging
from collections import deque
from typing import Deque, Union

from settings import LOG_FILE

# ----------------------------------------------------------------------
# 1️⃣ Configure the root logger once
# ----------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

logger = logging.getLogger("SurveyLogger")   # dedicated namespace
logger.setLevel(logging.DEBUG)
logger.propagate = False               # the curses screen must not get stray prints

# ----------------------------------------------------------------------
# 2️⃣ In‑memory handler – stores the last N log records for the console
# ----------------------------------------------------------------------
MAX_LOG_RECORDS = 300


class MemoryHandler(logging.Handler):
    """
    Keeps the newest N formatted log strings in a deque.  The console's
    log mode reads `handler.buffer` at any time.
    """
    def __init__(self, capacity: int = MAX_LOG_RECORDS):
        super().__init__(level=logging.INFO)
        self.capacity = capacity
        self.buffer: Deque[str] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        self.buffer.append(self.format(record))


formatter = logging.Formatter(LOG_FORMAT)

memory_handler = MemoryHandler()
memory_handler.setFormatter(formatter)
logger.addHandler(memory_handler)

# Write to file instead of stdout
file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
file_handler.setLevel(logging.DEBUG)      # capture everything
file_handler.setFormatter(formatter)
logger.addHandler(file_handler)

# Export the buffer so the view can read it without importing the whole logger.
log_buffer = memory_handler.buffer


def set_level(level: Union[int, str]) -> None:
    """Change what reaches the console buffer (`--log-level` on the CLI)."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    memory_handler.setLevel(level)


def log_debug(msg: str, *args, **kwargs) -> None:
    """Shortcut for `logger.debug(msg, *args, **kwargs)`."""
    logger.debug(msg, *args, **kwargs)
