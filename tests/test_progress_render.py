from transfers.progress import progress_bar, render_line, render_status
from transfers.state import CANCELLED, Status, TransferState


def _st(**kw):
    return TransferState("1-1", "magnet:x", title="Sample", quality="720p", **kw)


def test_progress_bar():
    assert progress_bar(0) == "░" * 10
    assert progress_bar(0.5) == "▓" * 5 + "░" * 5
    assert progress_bar(1.7) == "▓" * 10


def test_render_line_per_status():
    assert "connecting" in render_line(_st())
    line = render_line(_st(status=Status.DOWNLOADING, progress=0.5, downloaded_bytes=512,
                           total_bytes=1024, speed_bytes_per_sec=1024, eta_millis=90000, peer_count=3))
    assert "50.0%" in line and "1.0 KB/s" in line and "1m 30s" in line and "3 peers" in line
    done = _st()
    done.mark_done("/tmp/s.mp4")
    assert "/tmp/s.mp4" in render_line(done)
    cancelled = _st()
    cancelled.mark_error(CANCELLED)
    assert render_line(cancelled).endswith(CANCELLED)


def test_render_status_summary():
    assert render_status([]) == ["No transfers."]
    lines = render_status([_st(), _st(status=Status.DONE, file_path="/x")])
    assert lines[0] == "Active: 1  Total: 2"
    assert len(lines) == 3
