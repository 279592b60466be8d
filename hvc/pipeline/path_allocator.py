"""Collision-free final path allocation.

`reserve()` claims a name by creating an empty placeholder with O_EXCL, so two
workers can never end up with the same `name (N).ext`. The per-directory lock
keeps the suffix search itself from racing inside this process; O_EXCL also
covers other processes writing into the same directory.
"""

import os
import threading
from pathlib import Path
from typing import Dict, Iterator


def candidate_names(desired: Path) -> Iterator[Path]:
    """desired, then 'stem (1).ext', 'stem (2).ext', ..."""
    yield desired
    n = 1
    while True:
        yield desired.with_name(f"{desired.stem} ({n}){desired.suffix}")
        n += 1


class PathAllocator:
    def __init__(self):
        self._locks: Dict[Path, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, directory: Path) -> threading.Lock:
        key = directory.resolve()
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def preview(self, desired: Path) -> Path:
        """First free name right now. Claims nothing (dry runs, job creation)."""
        for candidate in candidate_names(desired):
            if not os.path.lexists(candidate):
                return candidate
        raise AssertionError("unreachable")

    def reserve(self, desired: Path) -> Path:
        """Atomically claims the first free name and returns it.

        The caller must either replace the placeholder or delete it.
        """
        desired.parent.mkdir(parents=True, exist_ok=True)
        with self._lock_for(desired.parent):
            for candidate in candidate_names(desired):
                try:
                    fd = os.open(candidate, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                except FileExistsError:
                    continue
                os.close(fd)
                return candidate
        raise AssertionError("unreachable")
