"""Transfer worker process.

Usage: ``python -m transfers.worker <content_ref> <target_dir> <state_slot>``

Runs one transfer and reports it on stdout using the line protocol (see
``transfers.protocol``) while mirroring every update into ``state_slot``.
If the slot already holds a record (written by the front end before spawning
us) its id, title, quality and start time are kept; transfer fields start
fresh. Exit status: 0 for done or timeout, 1 for errors, 2 for bad usage.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Optional, Protocol

import config
from logger import get_logger
from .protocol import WorkerReporter
from .state import Status, TransferState
from .store import read_slot, write_slot

log = get_logger("worker")


class TransferEngine(Protocol):
    async def run(self, content_ref: str, target_dir: str, reporter: WorkerReporter) -> None: ...


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="transfers.worker", description="Run a single transfer")
    parser.add_argument("content_ref", help="Magnet URI or .torrent path")
    parser.add_argument("target_dir", help="Directory to download into (created if absent)")
    parser.add_argument("state_slot", help="Path of the JSON state slot to keep updated")
    return parser.parse_args(argv)


def prepare_state(content_ref: str, slot_path: str) -> TransferState:
    filename = os.path.basename(slot_path)
    transfer_id = filename[:-5] if filename.endswith(".json") else filename
    state = TransferState(transfer_id, content_ref, process_id=os.getpid())
    previous = read_slot(slot_path)
    if previous is not None:
        state.id = previous.id
        state.title = previous.title
        state.quality = previous.quality
        state.started_at = previous.started_at
    return state


def _default_engine() -> TransferEngine:
    from .engine import LibtorrentEngine  # needs the libtorrent extra

    return LibtorrentEngine(
        listen_interfaces=config.LISTEN_INTERFACES,
        metadata_timeout=config.METADATA_TIMEOUT_SECONDS,
        interval=config.PROGRESS_INTERVAL_MS / 1000,
    )


async def run(args: argparse.Namespace, engine: Optional[TransferEngine] = None, stream=None) -> int:
    state = prepare_state(args.content_ref, args.state_slot)
    reporter = WorkerReporter(
        state,
        persist=lambda st: write_slot(args.state_slot, st),
        stream=stream,
    )
    log.info("Worker %s started for %s", os.getpid(), state.id)
    # Setup faults must reach the front end as an error line, not a silent exit.
    try:
        os.makedirs(args.target_dir, exist_ok=True)
        write_slot(args.state_slot, state)
        if engine is None:
            engine = _default_engine()
        await engine.run(args.content_ref, args.target_dir, reporter)
    except Exception as e:  # noqa: BLE001
        log.exception("Transfer %s crashed", state.id)
        reporter.error(str(e) or e.__class__.__name__)
        return 1
    if not reporter.finished:
        reporter.error("Transfer engine stopped without a result")
    log.info("Worker for %s finished: %s", state.id, state.status.value)
    return 1 if state.status is Status.ERROR else 0


def main(argv=None, engine: Optional[TransferEngine] = None) -> int:
    args = parse_args(argv)
    return asyncio.run(run(args, engine))


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
