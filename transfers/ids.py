"""Transfer identifier allocation.

Ids look like ``<epoch-millis>-<counter>``: the timestamp keeps them unique
across restarts (records from earlier sessions live on disk), the process-wide
counter keeps them unique for starts within the same millisecond. They double
as state slot file names, so only ``[0-9-]`` is used.
"""
from __future__ import annotations

import itertools
import time
from typing import Container

__all__ = ["new_transfer_id"]

_counter = itertools.count(1)


def new_transfer_id(taken: Container[str] = ()) -> str:
    """Return a fresh id not present in ``taken``."""
    while True:
        candidate = f"{int(time.time() * 1000)}-{next(_counter)}"
        if candidate not in taken:
            return candidate
