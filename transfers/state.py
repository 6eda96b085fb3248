from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Optional


class Status(str, enum.Enum):
    CONNECTING = "connecting"
    DOWNLOADING = "downloading"
    DONE = "done"
    ERROR = "error"
    TIMEOUT = "timeout"


ACTIVE_STATUSES = frozenset({Status.CONNECTING, Status.DOWNLOADING})
TERMINAL_STATUSES = frozenset({Status.DONE, Status.ERROR, Status.TIMEOUT})

CANCELLED = "Cancelled"
PROCESS_ENDED = "Process ended unexpectedly"
TIMEOUT_MESSAGE = "Could not connect to peers"


@dataclass(slots=True)
class TransferState:
    """Snapshot of one transfer attempt.

    ``title`` and ``quality`` come from the caller and are never reinterpreted.
    Transfer fields (progress, bytes, speed, eta, peers) come from the worker.
    ``file_path`` is only set once done; ``error_message`` only for error and
    timeout. Terminal statuses are absorbing: the ``mark_*`` helpers ignore
    records that already finished.
    """

    id: str
    content_ref: str
    title: str = ""
    quality: str = ""
    status: Status = Status.CONNECTING
    process_id: Optional[int] = None
    progress: float = 0.0
    downloaded_bytes: int = 0
    total_bytes: int = 0
    speed_bytes_per_sec: float = 0.0
    eta_millis: float = 0.0
    peer_count: int = 0
    name: Optional[str] = None
    file_path: Optional[str] = None
    error_message: Optional[str] = None
    started_at: float = field(default_factory=time.time)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_error(self, message: str) -> bool:
        if self.is_terminal:
            return False
        self.status = Status.ERROR
        self.error_message = message
        self.file_path = None
        return True

    def mark_timeout(self) -> bool:
        if self.is_terminal:
            return False
        self.status = Status.TIMEOUT
        self.error_message = TIMEOUT_MESSAGE
        self.file_path = None
        return True

    def mark_done(self, file_path: str) -> bool:
        if self.is_terminal:
            return False
        self.status = Status.DONE
        self.file_path = file_path
        self.error_message = None
        self.progress = 1.0
        if self.total_bytes:
            self.downloaded_bytes = self.total_bytes
        return True

    def adopt_transfer_fields(self, other: "TransferState") -> bool:
        """Copy worker-owned fields from ``other`` (a fresher durable copy).

        Caller-owned fields (title, quality) and ``started_at`` stay as they
        are. Returns True when anything changed.
        """
        if self.is_terminal:
            return False
        before = self.to_dict()
        self.status = other.status
        self.process_id = other.process_id or self.process_id
        self.progress = max(self.progress, other.progress) if other.is_active else other.progress
        self.downloaded_bytes = other.downloaded_bytes
        self.total_bytes = other.total_bytes
        self.speed_bytes_per_sec = other.speed_bytes_per_sec
        self.eta_millis = other.eta_millis
        self.peer_count = other.peer_count
        self.name = other.name or self.name
        self.file_path = other.file_path
        self.error_message = other.error_message
        return self.to_dict() != before

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "processId": self.process_id,
            "contentRef": self.content_ref,
            "title": self.title,
            "quality": self.quality,
            "status": self.status.value,
            "progress": self.progress,
            "downloadedBytes": self.downloaded_bytes,
            "totalBytes": self.total_bytes,
            "speedBytesPerSec": self.speed_bytes_per_sec,
            "etaMillis": self.eta_millis,
            "peerCount": self.peer_count,
            "name": self.name,
            "filePath": self.file_path,
            "errorMessage": self.error_message,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransferState":
        """Build a record from its serialized form.

        Raises KeyError / ValueError / TypeError on malformed input; the store
        treats those as "no information available".
        """
        pid = data.get("processId")
        return cls(
            id=str(data["id"]),
            content_ref=str(data["contentRef"]),
            title=str(data.get("title") or ""),
            quality=str(data.get("quality") or ""),
            status=Status(data["status"]),
            process_id=int(pid) if pid is not None else None,
            progress=float(data.get("progress", 0.0)),
            downloaded_bytes=int(data.get("downloadedBytes", 0)),
            total_bytes=int(data.get("totalBytes", 0)),
            speed_bytes_per_sec=float(data.get("speedBytesPerSec", 0.0)),
            eta_millis=float(data.get("etaMillis", 0.0)),
            peer_count=int(data.get("peerCount", 0)),
            name=data.get("name"),
            file_path=data.get("filePath"),
            error_message=data.get("errorMessage"),
            started_at=float(data["startedAt"]),
        )


__all__ = [
    "Status",
    "TransferState",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "CANCELLED",
    "PROCESS_ENDED",
    "TIMEOUT_MESSAGE",
]
