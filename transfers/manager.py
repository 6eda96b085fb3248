"""Download manager facade.

One explicitly constructed ``DownloadManager`` per front end. It owns the
in-memory record map, persists through ``StateStore`` and delegates worker
processes to ``ProcessSupervisor``. Call ``load_from_disk()`` once at startup
and ``close()`` on exit (workers keep running).
"""
from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Sequence

import config
import utils
from logger import get_logger
from .ids import new_transfer_id
from .state import CANCELLED, TransferState
from .store import StateStore
from .supervisor import ProcessSupervisor

log = get_logger("manager")


class DownloadManager:
    def __init__(
        self,
        state_dir: Optional[str] = None,
        download_dir: Optional[str] = None,
        worker_command: Optional[Sequence[str]] = None,
        retention_hours: Optional[float] = None,
        spawn_grace: Optional[float] = None,
    ):
        self.store = StateStore(state_dir or config.STATE_DIR)
        self.download_dir = download_dir or config.DOWNLOAD_DIR
        self.retention_hours = config.RETENTION_HOURS if retention_hours is None else retention_hours
        self.records: Dict[str, TransferState] = {}
        self.supervisor = ProcessSupervisor(
            self.store,
            self.records,
            worker_command=worker_command,
            download_dir=self.download_dir,
            spawn_grace=spawn_grace,
        )

    @property
    def handles(self):
        return self.supervisor.handles

    def start(self, content_ref: str, title: str, quality: str) -> str:
        """Start a transfer and return its id.

        Never raises for worker problems: those end up in the record. Needs a
        running event loop (the worker's output is read on it).
        """
        asyncio.get_running_loop()  # raises RuntimeError outside a loop, before any record exists
        transfer_id = new_transfer_id(self.records)
        state = TransferState(transfer_id, content_ref, title=title, quality=quality)
        self.records[transfer_id] = state
        self.supervisor.persist(state)
        self._warn_low_disk()
        log.info("Start %s: %s [%s]", transfer_id, title, quality)
        self.supervisor.spawn(state)
        return transfer_id

    def get(self, transfer_id: str) -> Optional[TransferState]:
        return self.records.get(transfer_id)

    def list(self) -> List[TransferState]:
        return sorted(self.records.values(), key=lambda st: (st.started_at, st.id))

    def list_active(self) -> List[TransferState]:
        return [st for st in self.list() if st.is_active]

    def refresh(self) -> int:
        """Re-read orphaned records from disk and probe their workers.

        Call before rendering a status view.
        """
        return self.supervisor.refresh_orphans()

    def cancel(self, transfer_id: str) -> None:
        state = self.records.get(transfer_id)
        if state is None or not state.is_active:
            return
        self.supervisor.terminate(state)
        if state.mark_error(CANCELLED):
            log.info("Cancelled %s", transfer_id)
            self.supervisor.persist(state)

    def clear_completed(self) -> int:
        finished = [tid for tid, st in self.records.items() if st.is_terminal]
        for tid in finished:
            self.records.pop(tid, None)
            self.store.delete(tid)
        if finished:
            log.info("Cleared %d finished transfer(s)", len(finished))
        return len(finished)

    def delete(self, transfer_id: str) -> None:
        state = self.records.get(transfer_id)
        if state is None:
            return
        self.supervisor.terminate(state)
        self.records.pop(transfer_id, None)
        self.store.delete(transfer_id)
        log.info("Deleted %s", transfer_id)

    def load_from_disk(self) -> int:
        """Populate records from the state directory. Returns how many were loaded."""
        cutoff = time.time() - self.retention_hours * 3600
        loaded = 0
        for state in self.store.load_all():
            if state.id in self.records:
                continue
            if state.is_terminal and self._last_update(state) < cutoff:
                log.debug("Pruning expired record %s", state.id)
                self.store.delete(state.id)
                continue
            self.records[state.id] = state
            loaded += 1
            self.supervisor.check_liveness(state)
        log.info("Loaded %d transfer record(s) from %s", loaded, self.store.directory)
        return loaded

    async def wait(self, transfer_id: str) -> Optional[TransferState]:
        """Wait until the live worker for ``transfer_id`` has finished."""
        await self.supervisor.wait(transfer_id)
        return self.records.get(transfer_id)

    async def close(self) -> None:
        await self.supervisor.detach_all()

    def _last_update(self, state: TransferState) -> float:
        modified = self.store.modified_at(state.id)
        return state.started_at if modified is None else modified

    def _warn_low_disk(self) -> None:
        try:
            free = utils.free_disk_mb(self.download_dir)
        except OSError:
            return  # directory not created yet; the worker creates it
        if free < config.DISK_WARNING_MB:
            log.warning("Low disk space in %s (%d MB free)", self.download_dir, free)


__all__ = ["DownloadManager"]
