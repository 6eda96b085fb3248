"""Worker process supervision.

Workers are plain ``subprocess.Popen`` children started in their own session
so they outlive the front end that launched them. Their stdout pipe is
attached to the running event loop and every protocol line is folded into
the shared record map, then persisted. When the front end exits we only stop
reading; the worker keeps writing its own state slot and a later session
picks it up through ``refresh_orphans``.
"""
from __future__ import annotations

import asyncio
import subprocess
from typing import Dict, MutableMapping, Optional, Sequence

import config
from logger import get_logger
from utils import is_process_alive, terminate_pid
from .protocol import LineBuffer, apply_message, parse_message
from .state import PROCESS_ENDED, TransferState
from .store import StateStore

log = get_logger("supervisor")

_CHUNK = 4096
_REAP_TIMEOUT = 5.0


class ProcessSupervisor:
    def __init__(
        self,
        store: StateStore,
        records: MutableMapping[str, TransferState],
        worker_command: Optional[Sequence[str]] = None,
        download_dir: Optional[str] = None,
        spawn_grace: Optional[float] = None,
    ):
        self.store = store
        # Owned by the manager; looked up per line so deleted records stay deleted.
        self.records = records
        self.worker_command = list(worker_command or config.WORKER_COMMAND)
        self.download_dir = download_dir or config.DOWNLOAD_DIR
        self.spawn_grace = config.SPAWN_GRACE_SECONDS if spawn_grace is None else spawn_grace
        # Live workers started in this session only
        self.handles: Dict[str, subprocess.Popen] = {}
        self._pumps: Dict[str, asyncio.Task] = {}

    # --- spawning -------------------------------------------------------

    def spawn(self, state: TransferState) -> bool:
        """Launch a worker for ``state`` and start reading its output.

        Must be called with an event loop running. Returns False (and marks
        the record failed) when the worker could not be started.
        """
        loop = asyncio.get_running_loop()
        cmd = [
            *self.worker_command,
            state.content_ref,
            self.download_dir,
            self.store.path_for(state.id),
        ]
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            log.error("Could not start worker for %s: %s", state.id, e)
            state.mark_error(f"Failed to start worker: {e}")
            self.persist(state)
            return False
        self.handles[state.id] = proc
        state.process_id = proc.pid
        self.persist(state)
        log.info("Spawned worker pid=%s for %s (%s)", proc.pid, state.id, state.title)
        self._pumps[state.id] = loop.create_task(self._pump(state.id, proc))
        return True

    async def _pump(self, transfer_id: str, proc: subprocess.Popen) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        transport = None
        try:
            transport, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), proc.stdout
            )
            buffer = LineBuffer()
            while True:
                chunk = await reader.read(_CHUNK)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    self.handle_line(transfer_id, line)
            tail = buffer.flush()
            if tail:
                self.handle_line(transfer_id, tail)
            code = await _reap(proc)
            log.debug("Worker %s for %s exited (code=%s)", proc.pid, transfer_id, code)
            self._on_stream_closed(transfer_id)
        finally:
            if transport is not None:
                transport.close()
            if self.handles.get(transfer_id) is proc:
                self.handles.pop(transfer_id, None)
            self._pumps.pop(transfer_id, None)

    # --- output wiring --------------------------------------------------

    def handle_line(self, transfer_id: str, line: str) -> bool:
        """Fold one worker output line into the record. Malformed lines are ignored."""
        message = parse_message(line)
        if message is None:
            log.debug("Ignoring malformed line from %s: %.200s", transfer_id, line)
            return False
        state = self.records.get(transfer_id)
        if state is None:
            return False
        if not apply_message(state, message):
            return False
        if state.is_terminal:
            log.info("Transfer %s finished: %s %s", transfer_id, state.status.value,
                     state.file_path or state.error_message or "")
        self.persist(state)
        return True

    def _on_stream_closed(self, transfer_id: str) -> None:
        state = self.records.get(transfer_id)
        if state is not None and state.mark_error(PROCESS_ENDED):
            log.warning("Worker for %s exited without a final message", transfer_id)
            self.persist(state)

    # --- liveness ---------------------------------------------------------

    def is_alive(self, state: TransferState) -> bool:
        proc = self.handles.get(state.id)
        if proc is not None:
            return proc.poll() is None
        return is_process_alive(state.process_id, state.started_at, self.spawn_grace)

    def check_liveness(self, state: TransferState) -> bool:
        """Fail an inherited active record whose worker is gone. Returns True if changed."""
        if not state.is_active or state.id in self.handles:
            return False
        if self.is_alive(state):
            return False
        log.warning("Worker pid=%s for %s is gone", state.process_id, state.id)
        state.mark_error(PROCESS_ENDED)
        self.persist(state)
        return True

    def refresh_orphans(self) -> int:
        """Pull fresh progress for records without a live pipe, then probe them.

        Returns the number of records that changed.
        """
        changed = 0
        for state in list(self.records.values()):
            if not state.is_active or state.id in self.handles:
                continue
            updated = False
            disk = self.store.load(state.id)
            if disk is not None and disk.id == state.id:
                updated = state.adopt_transfer_fields(disk)
            if self.check_liveness(state):
                updated = True
            changed += int(updated)
        return changed

    # --- termination ------------------------------------------------------

    def terminate(self, state: TransferState) -> bool:
        """Best-effort SIGTERM of the worker behind ``state``."""
        proc = self.handles.get(state.id)
        if proc is not None:
            if proc.poll() is None:
                try:
                    proc.terminate()
                except ProcessLookupError:
                    return False
            return True
        # Stored pids are only signalled while they still look like our worker.
        if state.is_active and self.is_alive(state):
            return terminate_pid(state.process_id)
        return False

    async def wait(self, transfer_id: str) -> None:
        task = self._pumps.get(transfer_id)
        if task is not None:
            await asyncio.shield(task)

    async def detach_all(self) -> None:
        """Stop reading every worker pipe without killing the workers."""
        tasks = list(self._pumps.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def persist(self, state: TransferState) -> None:
        try:
            self.store.write(state)
        except OSError as e:
            log.error("Could not persist %s: %s", state.id, e)


async def _reap(proc: subprocess.Popen, timeout: float = _REAP_TIMEOUT) -> Optional[int]:
    # Poll rather than block a thread: a worker may linger after closing stdout.
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while proc.poll() is None and loop.time() < deadline:
        await asyncio.sleep(0.05)
    return proc.returncode


__all__ = ["ProcessSupervisor"]
