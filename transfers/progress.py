from __future__ import annotations

from typing import Iterable, List

import utils
from .state import Status, TransferState

_ICONS = {
    Status.CONNECTING: "…",
    Status.DOWNLOADING: "⬇",
    Status.DONE: "✅",
    Status.ERROR: "❌",
    Status.TIMEOUT: "⌛",
}


def progress_bar(fraction: float, width: int = 10) -> str:
    filled = int(round(min(max(fraction, 0.0), 1.0) * width))
    return "▓" * filled + "░" * (width - filled)


def render_line(state: TransferState) -> str:
    """One status line for a transfer (used by the CLI list and watch views)."""
    head = f"{_ICONS[state.status]} {state.id}  {state.title} [{state.quality}]"
    if state.status is Status.CONNECTING:
        return f"{head}  connecting to peers..."
    if state.status is Status.DOWNLOADING:
        percent = state.progress * 100
        return (
            f"{head}  {progress_bar(state.progress)} {percent:.1f}%  "
            f"{utils.humanize_size(state.downloaded_bytes)}/{utils.humanize_size(state.total_bytes)}  "
            f"{utils.format_speed(state.speed_bytes_per_sec)}  "
            f"ETA {utils.format_eta(state.eta_millis)}  {state.peer_count} peers"
        )
    if state.status is Status.DONE:
        return f"{head}  saved to {state.file_path}"
    return f"{head}  {state.error_message}"


def render_status(states: Iterable[TransferState]) -> List[str]:
    states = list(states)
    if not states:
        return ["No transfers."]
    active = sum(1 for st in states if st.is_active)
    lines = [f"Active: {active}  Total: {len(states)}"]
    lines.extend(render_line(st) for st in states)
    return lines


__all__ = ["progress_bar", "render_line", "render_status"]
