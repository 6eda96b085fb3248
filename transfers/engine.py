"""libtorrent-backed transfer engine used by the worker process.

The engine polls the torrent status every ``interval`` seconds and reports
through a ``WorkerReporter``: one ``meta`` when metadata arrives, ``progress``
while downloading, then exactly one of ``done`` / ``error`` / ``timeout``.
No metadata within ``metadata_timeout`` seconds is a timeout, not an error.
"""
from __future__ import annotations

import asyncio
import os

import libtorrent as lt

from logger import get_logger
from .protocol import WorkerReporter

log = get_logger("engine")


def _eta_millis(remaining: int, rate: int) -> float:
    if rate <= 0 or remaining <= 0:
        return 0.0
    return remaining / rate * 1000


class LibtorrentEngine:
    def __init__(self, listen_interfaces: str = "0.0.0.0:6881", metadata_timeout: float = 30.0, interval: float = 0.5):
        self.listen_interfaces = listen_interfaces
        self.metadata_timeout = metadata_timeout
        self.interval = interval

    def _add(self, session, content_ref: str, target_dir: str):
        if content_ref.startswith("magnet:"):
            params = lt.parse_magnet_uri(content_ref)
        else:
            params = lt.add_torrent_params()
            params.ti = lt.torrent_info(content_ref)
        params.save_path = target_dir
        return session.add_torrent(params)

    async def run(self, content_ref: str, target_dir: str, reporter: WorkerReporter) -> None:
        session = lt.session({"listen_interfaces": self.listen_interfaces})
        handle = self._add(session, content_ref, target_dir)
        loop = asyncio.get_running_loop()
        started = loop.time()
        meta_sent = False
        try:
            while True:
                status = handle.status()
                if status.errc.value() != 0:
                    reporter.error(status.errc.message())
                    return
                expired = loop.time() - started > self.metadata_timeout
                if not status.has_metadata:
                    if expired:
                        log.info("No metadata after %.0fs", self.metadata_timeout)
                        reporter.timeout()
                        return
                else:
                    if not meta_sent:
                        reporter.meta(status.name, status.total_wanted)
                        meta_sent = True
                    if status.is_finished or status.is_seeding:
                        reporter.done(os.path.join(target_dir, status.name))
                        return
                    # .torrent inputs have metadata up front; an empty swarm still times out
                    if expired and status.num_peers == 0 and status.total_wanted_done == 0:
                        log.info("No peers after %.0fs", self.metadata_timeout)
                        reporter.timeout()
                        return
                    reporter.progress(
                        status.progress,
                        status.total_wanted_done,
                        status.total_wanted,
                        status.download_rate,
                        _eta_millis(status.total_wanted - status.total_wanted_done, status.download_rate),
                        status.num_peers,
                    )
                await asyncio.sleep(self.interval)
        finally:
            try:
                session.remove_torrent(handle)
            except RuntimeError:
                log.debug("remove_torrent failed", exc_info=True)


__all__ = ["LibtorrentEngine"]
