"""Durable per-transfer state slots.

One JSON file per record under the state directory. Writes go to a temporary
file in the same directory and are then renamed over the slot, so readers
(the front end, or a worker re-reading its own slot) never see half a record.
"""
from __future__ import annotations

import json
import os
import tempfile
from typing import List, Optional

from logger import get_logger
from .state import TransferState

log = get_logger("store")

_SUFFIX = ".json"


def write_slot(path: str, state: TransferState) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    payload = json.dumps(state.to_dict())
    fd, tmp = tempfile.mkstemp(prefix=f".{state.id}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def read_slot(path: str) -> Optional[TransferState]:
    """Return the record stored at ``path``, or None if missing or unparseable."""
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
        return TransferState.from_dict(data)
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
        log.debug("Skipping unreadable state slot %s: %s", path, e)
        return None


class StateStore:
    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, transfer_id: str) -> str:
        return os.path.join(self.directory, transfer_id + _SUFFIX)

    def write(self, state: TransferState) -> None:
        write_slot(self.path_for(state.id), state)

    def load(self, transfer_id: str) -> Optional[TransferState]:
        return read_slot(self.path_for(transfer_id))

    def modified_at(self, transfer_id: str) -> Optional[float]:
        """Time of the last write to the slot, or None if it is gone."""
        try:
            return os.path.getmtime(self.path_for(transfer_id))
        except OSError:
            return None

    def load_all(self) -> List[TransferState]:
        try:
            names = sorted(os.listdir(self.directory))
        except FileNotFoundError:
            return []
        states = []
        for name in names:
            # Temporary files start with a dot and never end in .json
            if name.startswith(".") or not name.endswith(_SUFFIX):
                continue
            st = read_slot(os.path.join(self.directory, name))
            if st is not None:
                states.append(st)
        return states

    def delete(self, transfer_id: str) -> None:
        try:
            os.remove(self.path_for(transfer_id))
        except OSError:
            log.debug("delete of slot %s failed (already gone?)", transfer_id)


__all__ = ["StateStore", "read_slot", "write_slot"]
