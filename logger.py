"""Project-wide logger with hard size cap (default 200MB).

Environment variables:
  LOG_FILE          Path to log file (default: transfers.log)
  LOG_LEVEL         Logging level (default: INFO)
  LOG_MAX_MB        Max size in megabytes before truncation (default: 200)
  LOG_STDERR_LEVEL  Level echoed to stderr (default: WARNING)

Front ends and worker processes append to the same file, so every line
carries the pid. When an incoming record would overflow the file, the file is
truncated in-place and a header line is written, then logging continues.
Workers never log to stdout: stdout is reserved for protocol messages.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Optional

__all__ = ["log", "get_logger", "TruncatingFileHandler"]

_ROOT_NAME = "transfers"
_FILE_HANDLER = "transfers-file"
_STDERR_HANDLER = "transfers-stderr"


class TruncatingFileHandler(logging.FileHandler):
    """File handler that truncates the file when size limit would be exceeded.

    No rotated copies are kept so the on-disk footprint stays bounded by
    ``max_bytes``. The record is formatted first so the size check is precise.
    """

    def __init__(self, filename: str, max_bytes: int, encoding: Optional[str] = "utf-8"):
        super().__init__(filename, mode="a", encoding=encoding, delay=True)
        self.max_bytes = max_bytes

    def _ensure_stream(self):
        if self.stream is None:
            self.stream = self._open()

    def _truncate_and_header(self, current_size: int):
        try:
            if self.stream:
                self.stream.close()
        except OSError:  # pragma: no cover
            pass
        self.stream = open(self.baseFilename, "w", encoding=self.encoding or "utf-8")
        header = (
            f"--- log truncated at {datetime.now(timezone.utc).isoformat()} (previous size {current_size} bytes) ---"
        )
        self.stream.write(header + "\n")

    def emit(self, record: logging.LogRecord):  # noqa: D401
        try:
            msg = self.format(record)
            self._ensure_stream()
            try:
                current_size = os.path.getsize(self.baseFilename)
            except OSError:
                current_size = 0
            if current_size + len(msg) + 1 > self.max_bytes:
                self._truncate_and_header(current_size)
            self.stream.write(msg + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _level(name: str, default: str) -> int:
    return getattr(logging, os.getenv(name, default).upper(), logging.INFO)


def _configure(logger: logging.Logger) -> None:
    level = _level("LOG_LEVEL", "INFO")
    log_file = os.getenv("LOG_FILE", "transfers.log")
    max_mb = _env_int("LOG_MAX_MB", 200)
    # Hard lower bound in case of misconfiguration
    if max_mb < 1:
        max_mb = 1

    fmt = "%(asctime)s %(levelname).1s [%(process)d] %(name)s:%(lineno)d | %(message)s"
    formatter = logging.Formatter(fmt, datefmt="%Y-%m-%d %H:%M:%S")

    handler = TruncatingFileHandler(log_file, max_bytes=max_mb * 1024 * 1024)
    handler.set_name(_FILE_HANDLER)
    handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler()
    stderr_handler.set_name(_STDERR_HANDLER)
    stderr_handler.setLevel(_level("LOG_STDERR_LEVEL", "WARNING"))
    stderr_handler.setFormatter(formatter)

    logger.setLevel(level)
    logger.addHandler(handler)
    logger.addHandler(stderr_handler)
    logger.propagate = False
    logger.debug("Logger initialized (file=%s, max_mb=%s)", log_file, max_mb)


def get_logger(component: str | None = None) -> logging.Logger:
    """Return the project logger, or a child of it for ``component``."""
    root = logging.getLogger(_ROOT_NAME)
    # Other handlers (e.g. test capture) may already be attached; only ours count.
    if not any(h.get_name() == _FILE_HANDLER for h in root.handlers):
        _configure(root)
    if component:
        return root.getChild(component)
    return root


log = get_logger()
