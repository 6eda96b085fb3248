import asyncio
import json
import os
import subprocess
import sys
import time

import pytest

from conftest import shutdown_workers
from transfers.manager import DownloadManager
from transfers.state import CANCELLED, PROCESS_ENDED, Status, TransferState
from transfers.store import StateStore


def _line(**obj):
    return json.dumps(obj)


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def _offline_manager(tmp_path, **kwargs) -> DownloadManager:
    return DownloadManager(
        state_dir=str(tmp_path / "state"),
        download_dir=str(tmp_path / "dl"),
        worker_command=[sys.executable, "-c", "pass"],
        **kwargs,
    )


def _add(m: DownloadManager, tid: str, status: Status = Status.DOWNLOADING, **kw) -> TransferState:
    """Insert a record as if inherited from an earlier session."""
    kw.setdefault("process_id", os.getpid())
    st = TransferState(tid, f"magnet:{tid}", title=tid, quality="720p", status=status, **kw)
    if status is Status.DONE:
        st.file_path = f"/tmp/{tid}"
    elif status in (Status.ERROR, Status.TIMEOUT):
        st.error_message = "failed"
    m.records[tid] = st
    m.store.write(st)
    return st


def test_start_feed_messages_scenario(make_manager):
    m = make_manager()

    async def _inner():
        tid = m.start("X", "Sample", "720p")
        listed = m.list()
        assert len(listed) == 1
        assert listed[0].status is Status.CONNECTING and listed[0].downloaded_bytes == 0
        assert listed[0].process_id == m.handles[tid].pid

        m.supervisor.handle_line(tid, _line(type="meta", name="s.mp4", totalBytes=1000))
        m.supervisor.handle_line(tid, _line(type="progress", progressFraction=0.5, downloadedBytes=500,
                                            totalBytes=1000, speedBytesPerSec=100, etaMillis=5000, peerCount=3))
        st = m.get(tid)
        assert st.status is Status.DOWNLOADING and st.progress == 0.5
        assert m.store.load(tid).progress == 0.5

        m.supervisor.handle_line(tid, _line(type="done", filePath="/tmp/s.mp4"))
        assert st.status is Status.DONE and st.file_path == "/tmp/s.mp4"
        assert m.list_active() == []
        await shutdown_workers(m)
        # Worker was killed after reporting done: outcome stays done
        assert m.get(tid).status is Status.DONE

    asyncio.run(_inner())


def test_concurrent_starts_are_independent(make_manager):
    m = make_manager()

    async def _inner():
        a = m.start("A", "First", "720p")
        b = m.start("B", "Second", "1080p")
        assert a != b
        m.supervisor.handle_line(a, _line(type="meta", name="a.mkv", totalBytes=10))
        m.supervisor.handle_line(b, _line(type="error", message="no route"))
        await shutdown_workers(m)
        return a, b

    a, b = asyncio.run(_inner())
    sa, sb = m.get(a), m.get(b)
    assert (sa.content_ref, sa.title, sa.name) == ("A", "First", "a.mkv")
    assert sb.status is Status.ERROR and sb.error_message == "no route" and sb.name is None
    # killed after the stream closed with no final message
    assert sa.status is Status.ERROR and sa.error_message == PROCESS_ENDED
    assert {st.id for st in m.list()} == {a, b}


def test_cancel_semantics(tmp_path):
    m = _offline_manager(tmp_path)
    m.cancel("missing")  # no-op
    assert m.list() == []

    done = _add(m, "1-1", Status.DONE)
    before = done.to_dict()
    m.cancel("1-1")
    assert done.to_dict() == before

    # Inherited worker whose process is already gone: nothing to kill, still cancelled
    active = _add(m, "1-2", process_id=_dead_pid())
    m.cancel("1-2")
    assert active.status is Status.ERROR and active.error_message == CANCELLED
    assert m.store.load("1-2").error_message == CANCELLED


def test_cancel_inherited_live_worker(tmp_path):
    m = _offline_manager(tmp_path)
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    try:
        _add(m, "1-1", process_id=proc.pid)
        m.cancel("1-1")
        assert proc.wait(timeout=10) != 0
        assert m.get("1-1").error_message == CANCELLED
    finally:
        if proc.poll() is None:  # pragma: no cover
            proc.kill()


def test_clear_completed_only_removes_terminal(tmp_path):
    m = _offline_manager(tmp_path)
    keep = [_add(m, "1-1", Status.CONNECTING), _add(m, "1-2", Status.DOWNLOADING, progress=0.4)]
    snapshot = [st.to_dict() for st in keep]
    for tid, status in (("2-1", Status.DONE), ("2-2", Status.ERROR), ("2-3", Status.TIMEOUT)):
        _add(m, tid, status)

    assert m.clear_completed() == 3
    assert [st.to_dict() for st in m.list()] == snapshot
    assert sorted(st.id for st in m.store.load_all()) == ["1-1", "1-2"]
    assert m.clear_completed() == 0


def test_delete_removes_any_status(tmp_path):
    m = _offline_manager(tmp_path)
    _add(m, "1-1", Status.DONE)
    _add(m, "1-2", process_id=_dead_pid())
    m.delete("1-1")
    m.delete("1-2")
    m.delete("nope")
    assert m.list() == []
    assert m.store.load_all() == []


def test_load_from_disk_fails_stale_workers(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    stale = TransferState("1-1", "magnet:x", title="Sample", quality="720p",
                          status=Status.DOWNLOADING, process_id=_dead_pid(), progress=0.3)
    live = TransferState("1-2", "magnet:y", status=Status.CONNECTING, process_id=os.getpid())
    never_spawned = TransferState("1-3", "magnet:z", status=Status.CONNECTING)
    for st in (stale, live, never_spawned):
        store.write(st)

    m = _offline_manager(tmp_path)
    assert m.load_from_disk() == 3
    assert m.get("1-1").status is Status.ERROR
    assert m.get("1-1").error_message == PROCESS_ENDED
    assert m.get("1-1").title == "Sample"
    assert m.store.load("1-1").error_message == PROCESS_ENDED
    assert m.get("1-2").status is Status.CONNECTING
    assert m.get("1-3").error_message == PROCESS_ENDED
    assert [st.id for st in m.list_active()] == ["1-2"]


def test_load_from_disk_treats_reused_pid_as_dead(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    # Our own pid, but the record predates this process by far more than the grace window
    store.write(TransferState("1-1", "magnet:x", status=Status.DOWNLOADING,
                              process_id=os.getpid(), started_at=time.time() - 3600))
    m = _offline_manager(tmp_path, spawn_grace=60)
    m.load_from_disk()
    assert m.get("1-1").error_message == PROCESS_ENDED


def test_load_from_disk_prunes_expired_terminal_records(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    old = time.time() - 25 * 3600
    expired = TransferState("1-1", "magnet:x", started_at=old)
    expired.mark_done("/tmp/x")
    recent = TransferState("1-2", "magnet:y")
    recent.mark_error(CANCELLED)
    store.write(expired)
    os.utime(store.path_for("1-1"), (old, old))
    store.write(recent)
    (tmp_path / "state" / "junk.json").write_text("{{{")

    m = _offline_manager(tmp_path)
    assert m.load_from_disk() == 1
    assert [st.id for st in m.list()] == ["1-2"]
    assert store.load("1-1") is None


def test_load_from_disk_keeps_long_transfer_that_just_finished(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    # Started two days ago, final slot write happened just now
    st = TransferState("1-1", "magnet:x", started_at=time.time() - 48 * 3600)
    st.mark_done("/tmp/x")
    store.write(st)
    m = _offline_manager(tmp_path)
    assert m.load_from_disk() == 1
    assert m.get("1-1").status is Status.DONE


def test_refresh_pulls_progress_of_orphans(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    started = time.time()
    store.write(TransferState("1-1", "magnet:x", title="Sample", quality="720p",
                              status=Status.CONNECTING, process_id=os.getpid(), started_at=started))
    m = _offline_manager(tmp_path)
    m.load_from_disk()

    # The previous session's worker keeps writing its slot
    worker_view = TransferState("1-1", "magnet:x", title="Sample", quality="720p",
                                status=Status.DOWNLOADING, process_id=os.getpid(), progress=0.7,
                                downloaded_bytes=700, total_bytes=1000, started_at=started)
    store.write(worker_view)
    assert m.refresh() == 1
    st = m.get("1-1")
    assert st.status is Status.DOWNLOADING and st.progress == 0.7 and st.downloaded_bytes == 700

    worker_view.mark_done("/tmp/s.mp4")
    store.write(worker_view)
    m.refresh()
    assert st.status is Status.DONE and st.file_path == "/tmp/s.mp4"
    assert m.list_active() == []
    assert m.refresh() == 0


def test_refresh_keeps_cancelled_records(tmp_path):
    m = _offline_manager(tmp_path)
    st = _add(m, "1-1", process_id=os.getpid())
    m.records["1-1"].mark_error(CANCELLED)
    # A late slot write from the dying worker must not revive the record
    revived = TransferState("1-1", "magnet:1-1", status=Status.DOWNLOADING, progress=0.9)
    m.store.write(revived)
    m.refresh()
    assert st.status is Status.ERROR and st.error_message == CANCELLED


def test_start_outside_event_loop_leaves_no_record(tmp_path):
    m = _offline_manager(tmp_path)
    with pytest.raises(RuntimeError):
        m.start("magnet:x", "Sample", "720p")
    assert m.list() == []
    assert m.store.load_all() == []
