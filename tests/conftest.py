import os
import sys
import tempfile
import textwrap

import pytest

os.environ.setdefault("SKIP_DOTENV", "1")
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "transfers-tests.log"))

from transfers.manager import DownloadManager  # noqa: E402

# Prelude shared by scripted workers: argv = content_ref, target_dir, state_slot
_PRELUDE = """
import json, sys, time

def send(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()
"""

SLEEPING_WORKER = "time.sleep(60)\n"


@pytest.fixture
def make_manager(tmp_path):
    """Factory: manager whose workers run the given Python snippet."""

    def _make(body: str = SLEEPING_WORKER, **kwargs) -> DownloadManager:
        script = tmp_path / "fake_worker.py"
        script.write_text(_PRELUDE + textwrap.dedent(body))
        return DownloadManager(
            state_dir=str(tmp_path / "state"),
            download_dir=str(tmp_path / "downloads"),
            worker_command=[sys.executable, str(script)],
            **kwargs,
        )

    return _make


async def shutdown_workers(manager: DownloadManager):
    for proc in list(manager.handles.values()):
        if proc.poll() is None:
            proc.terminate()
    for tid in list(manager.handles):
        await manager.wait(tid)
