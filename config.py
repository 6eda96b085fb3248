"""Runtime configuration.

Reads environment variables once (via python-dotenv unless SKIP_DOTENV is set)
and exposes constants for the rest of the code. Keep this lean: only parsing +
validation. Consumers read ``config.X`` at call time so tests can monkeypatch.
"""
from __future__ import annotations

import os
import shlex
import sys
from dotenv import load_dotenv

if not os.getenv("SKIP_DOTENV"):
    load_dotenv()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_path(name: str, default: str) -> str:
    return os.path.expanduser(os.path.expandvars(os.getenv(name, default)))


DOWNLOAD_DIR: str = _env_path("DOWNLOAD_DIR", "~/Downloads/Transfers")
STATE_DIR: str = _env_path("STATE_DIR", "~/.local/state/transfers")

# Terminal records older than this are pruned on startup.
RETENTION_HOURS: int = _env_int("RETENTION_HOURS", 24)

# Worker side timings
METADATA_TIMEOUT_SECONDS: int = _env_int("METADATA_TIMEOUT_SECONDS", 30)
PROGRESS_INTERVAL_MS: int = _env_int("PROGRESS_INTERVAL_MS", 500)
LISTEN_INTERFACES: str = os.getenv("LISTEN_INTERFACES", "0.0.0.0:6881")

# A live pid whose process started later than record start + grace is a reused pid.
SPAWN_GRACE_SECONDS: int = _env_int("SPAWN_GRACE_SECONDS", 60)
DISK_WARNING_MB: int = _env_int("DISK_WARNING_MB", 500)

_RAW_WORKER_COMMAND = os.getenv("WORKER_COMMAND", "").strip()
WORKER_COMMAND: list[str] = (
    shlex.split(_RAW_WORKER_COMMAND)
    if _RAW_WORKER_COMMAND
    else [sys.executable, "-m", "transfers.worker"]
)


def validate() -> None:
    if RETENTION_HOURS <= 0:
        raise SystemExit("RETENTION_HOURS must be positive")
    if METADATA_TIMEOUT_SECONDS <= 0 or PROGRESS_INTERVAL_MS <= 0:
        raise SystemExit(
            "METADATA_TIMEOUT_SECONDS / PROGRESS_INTERVAL_MS must be positive"
        )
    if not WORKER_COMMAND:
        raise SystemExit("WORKER_COMMAND is empty")


__all__ = [
    "DOWNLOAD_DIR",
    "STATE_DIR",
    "RETENTION_HOURS",
    "METADATA_TIMEOUT_SECONDS",
    "PROGRESS_INTERVAL_MS",
    "LISTEN_INTERFACES",
    "SPAWN_GRACE_SECONDS",
    "DISK_WARNING_MB",
    "WORKER_COMMAND",
    "validate",
]
