"""Utility helpers (size formatting, magnet links, disk and process checks)."""
from __future__ import annotations

import math
import shutil
from urllib.parse import quote

import psutil


def humanize_size(size_bytes: float) -> str:
    """Return human readable size (caps at TB to avoid index errors).

    For extremely large inputs > TB we still label as TB.
    """
    if size_bytes <= 0:
        return "0B"
    names = ("B", "KB", "MB", "GB", "TB")
    i = int(math.log(size_bytes, 1024))
    if i >= len(names):  # safeguard for pathological values
        i = len(names) - 1
    p = 1024 ** i
    return f"{round(size_bytes / p, 2)} {names[i]}"


def format_speed(bytes_per_sec: float) -> str:
    return f"{humanize_size(bytes_per_sec)}/s"


def format_eta(eta_millis: float) -> str:
    """Format a remaining-time estimate given in milliseconds.

    Zero, negative or non-finite estimates render as ``--:--``.
    """
    if not eta_millis or not math.isfinite(eta_millis) or eta_millis < 0:
        return "--:--"
    seconds = int(eta_millis / 1000)
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h}h {m}m"
    return f"{m}m {s}s"


TRACKERS = (
    "udp://open.demonii.com:1337/announce",
    "udp://tracker.openbittorrent.com:80",
    "udp://tracker.coppersurfer.tk:6969",
    "udp://glotorrents.pw:6969/announce",
    "udp://tracker.opentrackr.org:1337/announce",
    "udp://torrent.gresille.org:80/announce",
    "udp://p4p.arenabg.com:1337",
    "udp://tracker.leechers-paradise.org:6969",
)


def build_magnet(info_hash: str, title: str, trackers=TRACKERS) -> str:
    """Build a magnet URI for ``info_hash`` with a display name and trackers."""
    # Same escaping as encodeURIComponent so links stay copy/paste compatible.
    dn = quote(title, safe="!*'()")
    tr = "".join(f"&tr={quote(t, safe='')}" for t in trackers)
    return f"magnet:?xt=urn:btih:{info_hash}&dn={dn}{tr}"


def free_disk_mb(path: str) -> int:
    """Return free disk space for the partition containing path in MB."""
    usage = shutil.disk_usage(path)
    return int(usage.free / (1024 * 1024))


def is_process_alive(pid: int | None, started_at: float | None = None, grace: float = 60.0) -> bool:
    """Non-destructive liveness probe for a worker pid.

    Zombies count as gone; a pid we may not inspect counts as alive. When
    ``started_at`` is given, a process created more than ``grace`` seconds
    after it cannot be the worker we launched (pid reused by the OS).
    Best-effort only: the probe is inherently racy.
    """
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        created = proc.create_time()
    except psutil.NoSuchProcess:  # includes ZombieProcess
        return False
    except psutil.AccessDenied:
        return True
    if started_at is not None and created > started_at + grace:
        return False
    return True


def terminate_pid(pid: int | None) -> bool:
    """Send SIGTERM to ``pid``. Returns False if it could not be signalled."""
    if not pid:
        return False
    try:
        psutil.Process(pid).terminate()
    except psutil.Error:
        return False
    return True


__all__ = [
    "humanize_size",
    "format_speed",
    "format_eta",
    "TRACKERS",
    "build_magnet",
    "free_disk_mb",
    "is_process_alive",
    "terminate_pid",
]
