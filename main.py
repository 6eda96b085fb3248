from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import config
import utils
from logger import log
from transfers.manager import DownloadManager
from transfers.progress import render_line, render_status
from transfers.state import Status

_CLEAR = "\033[2J\033[H"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="transfers", description="Run and monitor peer-to-peer transfers")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start a transfer")
    start.add_argument("content_ref", nargs="?", help="Magnet URI or .torrent path")
    start.add_argument("--hash", dest="info_hash", help="Build the magnet from an info hash instead")
    start.add_argument("--title", default="", help="Display title")
    start.add_argument("--quality", default="", help="Quality label (e.g. 720p)")
    start.add_argument("--wait", action="store_true", help="Stay attached until the transfer ends")

    ls = sub.add_parser("list", help="List transfers")
    ls.add_argument("--active", action="store_true", help="Only connecting/downloading")

    cancel = sub.add_parser("cancel", help="Cancel an active transfer")
    cancel.add_argument("id")
    delete = sub.add_parser("delete", help="Stop and forget a transfer")
    delete.add_argument("id")
    sub.add_parser("clear", help="Forget finished transfers")

    watch = sub.add_parser("watch", help="Live status view (Enter or Ctrl-C to leave)")
    watch.add_argument("--interval", type=float, default=1.0, help="Refresh interval in seconds")

    magnet = sub.add_parser("magnet", help="Print a magnet URI for an info hash")
    magnet.add_argument("info_hash")
    magnet.add_argument("title")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "magnet":
        print(utils.build_magnet(args.info_hash, args.title))
        return 0
    if args.command == "start" and not (args.content_ref or args.info_hash):
        print("start: give a content reference or --hash", file=sys.stderr)
        return 2
    config.validate()
    return asyncio.run(_main(args))


async def _main(args: argparse.Namespace) -> int:
    manager = DownloadManager()
    # Single load per front end session; reconciles workers left by earlier sessions.
    manager.load_from_disk()
    handler = _COMMANDS[args.command]
    try:
        return await handler(manager, args)
    finally:
        await manager.close()


async def _start(manager: DownloadManager, args) -> int:
    ref = args.content_ref or utils.build_magnet(args.info_hash, args.title or args.info_hash)
    transfer_id = manager.start(ref, args.title, args.quality)
    print(transfer_id)
    if not args.wait:
        return 0
    stop = asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), stop.set)
    waiter = asyncio.ensure_future(manager.wait(transfer_id))
    stopper = asyncio.ensure_future(stop.wait())
    await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
    stopper.cancel()
    if not waiter.done():
        waiter.cancel()
        log.info("Detached from %s; worker keeps running", transfer_id)
        return 0
    state = manager.get(transfer_id)
    if state is None:
        return 1
    print(render_line(state))
    return 0 if state.status in (Status.DONE, Status.TIMEOUT) else 1


async def _list(manager: DownloadManager, args) -> int:
    manager.refresh()
    states = manager.list_active() if args.active else manager.list()
    print("\n".join(render_status(states)))
    return 0


async def _cancel(manager: DownloadManager, args) -> int:
    if manager.get(args.id) is None:
        print(f"Unknown transfer: {args.id}", file=sys.stderr)
        return 1
    manager.cancel(args.id)
    print(render_line(manager.get(args.id)))
    return 0


async def _delete(manager: DownloadManager, args) -> int:
    if manager.get(args.id) is None:
        print(f"Unknown transfer: {args.id}", file=sys.stderr)
        return 1
    manager.delete(args.id)
    print(f"Deleted {args.id}")
    return 0


async def _clear(manager: DownloadManager, args) -> int:
    print(f"Cleared {manager.clear_completed()} finished transfer(s)")
    return 0


async def _watch(manager: DownloadManager, args) -> int:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    _install_signal_handlers(loop, stop.set)
    reading_stdin = _stop_on_enter(loop, stop)
    try:
        while not stop.is_set():
            manager.refresh()
            states = manager.list()
            if sys.stdout.isatty():
                sys.stdout.write(_CLEAR)
            print("\n".join(render_status(states)))
            if not any(st.is_active for st in states):
                break
            print("\n(Enter to leave)")
            try:
                await asyncio.wait_for(stop.wait(), timeout=args.interval)
            except asyncio.TimeoutError:
                pass
    finally:
        if reading_stdin:
            loop.remove_reader(sys.stdin.fileno())
    return 0


def _stop_on_enter(loop: asyncio.AbstractEventLoop, stop: asyncio.Event) -> bool:
    def _on_input():
        if sys.stdin.readline():
            stop.set()
        else:  # EOF: stdin will never deliver an Enter
            loop.remove_reader(sys.stdin.fileno())

    try:
        loop.add_reader(sys.stdin.fileno(), _on_input)
    except (NotImplementedError, OSError, ValueError):  # pragma: no cover - no selectable stdin
        return False
    return True


def _install_signal_handlers(loop, trigger):
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, trigger)
        except NotImplementedError:  # pragma: no cover
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(trigger))


_COMMANDS = {
    "start": _start,
    "list": _list,
    "cancel": _cancel,
    "delete": _delete,
    "clear": _clear,
    "watch": _watch,
}


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
