"""
Line-delimited JSON log files shared by the record store and quota ledger.

Reads are corruption tolerant: blank lines, lines that are not valid JSON and
lines that are not JSON objects are skipped, so a half-written tail or a line
from a newer schema never takes the whole log down.

Writes go through one writer lock per resolved path.  Every mutation in this
process (append or read-all/rewrite-all) holds it, which removes the lost
update race between concurrent requests.  Separate processes writing the same
file still race; last writer wins.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_locks: dict[Path, threading.RLock] = {}
_locks_guard = threading.Lock()


def _writer_lock(path: Path) -> threading.RLock:
    key = path.resolve()
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.RLock()
        return lock


class JsonlFile:
    """A JSONL file of objects with tolerant reads and locked rewrites."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = _writer_lock(self.path)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the writer lock across a read-transform-rewrite sequence."""
        with self._lock:
            yield

    def read_objects(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        objects: list[dict[str, Any]] = []
        with open(self.path, encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("skipping malformed line %d in %s", lineno, self.path)
                    continue
                if isinstance(obj, dict):
                    objects.append(obj)
        return objects

    def append_object(self, obj: dict[str, Any]) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(obj, ensure_ascii=False) + "\n")

    def rewrite_objects(self, objects: Iterable[dict[str, Any]]) -> None:
        """Replace the whole file; readers see either the old or new content."""
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            with open(tmp, "w", encoding="utf-8") as fh:
                for obj in objects:
                    fh.write(json.dumps(obj, ensure_ascii=False) + "\n")
            os.replace(tmp, self.path)
