"""Transfer orchestration: records, durable slots, worker protocol and supervision."""

from .state import Status, TransferState  # noqa: F401
from .store import StateStore  # noqa: F401
from .manager import DownloadManager  # noqa: F401
