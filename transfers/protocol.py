"""Line-delimited JSON protocol between a worker process and the supervisor.

Each line on the worker's stdout is one JSON object whose ``type`` is one of::

    meta      name, totalBytes
    progress  progressFraction, downloadedBytes, totalBytes,
              speedBytesPerSec, etaMillis, peerCount
    done      filePath                  (terminal)
    error     message                   (terminal)
    timeout                             (terminal)

The supervisor side parses lines (``parse_message``), reassembles lines split
across pipe reads (``LineBuffer``) and folds messages into a record
(``apply_message``). The worker side emits them (``WorkerReporter``).
"""
from __future__ import annotations

import json
import math
import os
import sys
from typing import Any, Callable, Optional

from logger import get_logger
from .state import Status, TransferState

log = get_logger("protocol")

TERMINAL_KINDS = frozenset({"done", "error", "timeout"})

_INT = "int"
_FLOAT = "float"
_STR = "str"

_SCHEMA: dict[str, dict[str, str]] = {
    "meta": {"name": _STR, "totalBytes": _INT},
    "progress": {
        "progressFraction": _FLOAT,
        "downloadedBytes": _INT,
        "totalBytes": _INT,
        "speedBytesPerSec": _FLOAT,
        "etaMillis": _FLOAT,
        "peerCount": _INT,
    },
    "done": {"filePath": _STR},
    "error": {"message": _STR},
    "timeout": {},
}

# Fields a worker may leave null (e.g. an unknown ETA serialized from Infinity)
_NULLABLE = {"etaMillis", "speedBytesPerSec", "name"}


def _coerce(kind: str, value: Any) -> Any:
    if kind == _STR:
        if not isinstance(value, str):
            raise TypeError("expected string")
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError("expected number")
    if not math.isfinite(value):
        return 0
    value = max(value, 0)
    return int(value) if kind == _INT else float(value)


def parse_message(line: str | bytes) -> Optional[dict[str, Any]]:
    """Parse one protocol line. Returns None for anything malformed."""
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    kind = data.get("type")
    schema = _SCHEMA.get(kind) if isinstance(kind, str) else None
    if schema is None:
        return None
    message: dict[str, Any] = {"type": kind}
    for key, ftype in schema.items():
        value = data.get(key)
        if value is None:
            if key not in _NULLABLE:
                return None
            message[key] = "" if ftype == _STR else 0
            continue
        try:
            message[key] = _coerce(ftype, value)
        except TypeError:
            return None
    return message


class LineBuffer:
    """Reassemble newline-terminated lines from arbitrary byte chunks.

    Lines come out in arrival order. An unterminated tail is held back until
    its terminator arrives (or ``flush`` is called at end of stream).
    """

    def __init__(self):
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        *lines, self._pending = (self._pending + chunk).split(b"\n")
        return [text for text in map(_decode, lines) if text]

    def flush(self) -> Optional[str]:
        tail, self._pending = self._pending, b""
        return _decode(tail) or None


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").strip()


def apply_message(state: TransferState, message: dict[str, Any]) -> bool:
    """Fold a parsed message into ``state``. Returns True if it changed.

    Terminal records are left untouched whatever the message.
    """
    if state.is_terminal:
        return False
    kind = message["type"]
    if kind == "meta":
        state.status = Status.DOWNLOADING
        state.name = message.get("name") or state.name
        state.total_bytes = message["totalBytes"]
        return True
    if kind == "progress":
        state.status = Status.DOWNLOADING
        fraction = min(max(message["progressFraction"], 0.0), 1.0)
        state.progress = max(state.progress, fraction)
        state.downloaded_bytes = message["downloadedBytes"]
        state.total_bytes = message["totalBytes"]
        state.speed_bytes_per_sec = message["speedBytesPerSec"]
        state.eta_millis = message["etaMillis"]
        state.peer_count = message["peerCount"]
        return True
    if kind == "done":
        return state.mark_done(message["filePath"])
    if kind == "error":
        return state.mark_error(message["message"] or "Unknown error")
    if kind == "timeout":
        return state.mark_timeout()
    return False


class WorkerReporter:
    """Worker-side emitter.

    Every message is written as one line to ``stream``, folded into the
    worker's own record and persisted through ``persist`` (the state slot),
    so progress stays observable after the front end that owned our stdout
    pipe has gone away. Exactly one terminal message is ever sent.
    """

    def __init__(
        self,
        state: TransferState,
        persist: Callable[[TransferState], None] | None = None,
        stream=None,
    ):
        self.state = state
        self.persist = persist
        self.stream = stream if stream is not None else sys.stdout
        self.finished = False
        self._stream_open = True

    def meta(self, name: str, total_bytes: int) -> bool:
        return self.send({"type": "meta", "name": name, "totalBytes": int(total_bytes)})

    def progress(
        self,
        fraction: float,
        downloaded: int,
        total: int,
        speed: float,
        eta_millis: float,
        peers: int,
    ) -> bool:
        return self.send(
            {
                "type": "progress",
                "progressFraction": float(fraction),
                "downloadedBytes": int(downloaded),
                "totalBytes": int(total),
                "speedBytesPerSec": float(speed),
                "etaMillis": float(eta_millis),
                "peerCount": int(peers),
            }
        )

    def done(self, file_path: str) -> bool:
        return self.send({"type": "done", "filePath": file_path})

    def error(self, message: str) -> bool:
        return self.send({"type": "error", "message": message})

    def timeout(self) -> bool:
        return self.send({"type": "timeout"})

    def send(self, message: dict[str, Any]) -> bool:
        if self.finished:
            log.debug("Dropping %s after terminal message", message.get("type"))
            return False
        if message["type"] in TERMINAL_KINDS:
            self.finished = True
        self._write_line(json.dumps(message))
        apply_message(self.state, message)
        if self.persist is not None:
            try:
                self.persist(self.state)
            except OSError as e:
                log.warning("Could not persist state slot %s: %s", self.state.id, e)
        return True

    def _write_line(self, line: str) -> None:
        if not self._stream_open:
            return
        try:
            self.stream.write(line + "\n")
            self.stream.flush()
        except (BrokenPipeError, ValueError):
            # Reader went away (front end exited). Keep going on the slot only
            # and point the fd at devnull so the interpreter's exit flush is quiet.
            self._stream_open = False
            log.info("stdout closed; %s continues via state slot", self.state.id)
            try:
                fd = self.stream.fileno()
                devnull = os.open(os.devnull, os.O_WRONLY)
                os.dup2(devnull, fd)
                os.close(devnull)
            except (OSError, ValueError, AttributeError):
                pass


__all__ = [
    "TERMINAL_KINDS",
    "parse_message",
    "LineBuffer",
    "apply_message",
    "WorkerReporter",
]
