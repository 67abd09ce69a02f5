"""
Chunked upload assembler.

Last-resort acquisition path: the userscript already holds the blob in the
user's browser and pushes it to the server, either in one body or in indexed
chunks (large videos exceed what a single request comfortably carries).

Chunks land in ``chunks/<recordId>/chunk_<i>`` next to a ``total`` marker
holding the declared chunk count; a different total starts the session over.
Once every index in ``[0, total)`` is present, the chunks are concatenated in
index order (never arrival order) into the record's destination and the temp
directory is removed.
"""

from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path

from downloader.core import commit_part, discard_part, part_path, write_atomic
from store.records import Record, RecordStore
from utils.common import format_bytes
from utils.errors import InvalidInputError

logger = logging.getLogger(__name__)

CHUNKS_DIRNAME = "chunks"
CHUNK_PREFIX = "chunk_"
TOTAL_MARKER = "total"

_record_locks: dict[str, threading.Lock] = {}
_record_locks_guard = threading.Lock()


def _record_lock(record_id: str) -> threading.Lock:
    with _record_locks_guard:
        lock = _record_locks.get(record_id)
        if lock is None:
            lock = _record_locks[record_id] = threading.Lock()
        return lock


def _parse_marker(value: str | int | None, name: str) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidInputError(f"{name} must be an integer, got {value!r}") from None


@dataclass
class UploadResult:
    size: int = 0
    chunk: int | None = None
    total: int | None = None
    complete: bool = True

    def to_dict(self) -> dict:
        if self.chunk is None:
            return {"ok": True, "size": self.size}
        return {"ok": True, "chunk": self.chunk, "total": self.total,
                "complete": self.complete}


class ChunkedUploadAssembler:
    """Accept single-shot or chunked uploads for existing records."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    @property
    def chunks_root(self) -> Path:
        return self.store.data_dir / CHUNKS_DIRNAME

    def chunk_dir(self, record_id: str) -> Path:
        return self.chunks_root / record_id

    def pending_chunks(self, record_id: str) -> list[int]:
        """Indices received so far for an unfinished chunked upload."""
        folder = self.chunk_dir(record_id)
        if not folder.is_dir():
            return []
        indices = []
        for path in folder.glob(CHUNK_PREFIX + "*"):
            suffix = path.name[len(CHUNK_PREFIX):]
            if suffix.isdigit():
                indices.append(int(suffix))
        return sorted(indices)

    def save_for_id(self, record_id: str, payload: bytes,
                    chunk_index: str | int | None = None,
                    total_chunks: str | int | None = None) -> UploadResult:
        if not record_id:
            raise InvalidInputError("missing X-Record-Id header")
        record = self.store.require(record_id)
        return self.save(record, payload, chunk_index, total_chunks)

    def save(self, record: Record, payload: bytes,
             chunk_index: str | int | None = None,
             total_chunks: str | int | None = None) -> UploadResult:
        if record.blocked:
            raise InvalidInputError(f"record {record.id} is blocked", id=record.id)
        if not payload:
            raise InvalidInputError("no file data received")

        dest = self.store.file_path(record)
        if chunk_index is None and total_chunks is None:
            size = write_atomic(dest, payload)
            logger.info("upload complete for %s: %s (%s)",
                        record.id, dest.name, format_bytes(size))
            return UploadResult(size=size)

        if chunk_index is None or total_chunks is None:
            raise InvalidInputError("X-Chunk-Index and X-Total-Chunks must be sent together")
        index = _parse_marker(chunk_index, "X-Chunk-Index")
        total = _parse_marker(total_chunks, "X-Total-Chunks")
        if total < 1:
            raise InvalidInputError(f"X-Total-Chunks must be at least 1, got {total}")
        if not 0 <= index < total:
            raise InvalidInputError(f"chunk index {index} outside [0, {total})")

        folder = self.chunk_dir(record.id)
        with _record_lock(record.id):
            self._start_session(record.id, folder, total)
            (folder / f"{CHUNK_PREFIX}{index}").write_bytes(payload)
            logger.debug("chunk %d/%d for %s (%s)",
                         index + 1, total, record.id, format_bytes(len(payload)))

            if not all((folder / f"{CHUNK_PREFIX}{i}").is_file() for i in range(total)):
                return UploadResult(chunk=index, total=total, complete=False)

            size = self._assemble(folder, dest, total)
            with _record_locks_guard:
                _record_locks.pop(record.id, None)
        logger.info("chunked upload complete for %s: %s (%s)",
                    record.id, dest.name, format_bytes(size))
        return UploadResult(size=size, chunk=index, total=total, complete=True)

    def _start_session(self, record_id: str, folder: Path, total: int) -> None:
        """Reset the chunk folder when the declared total changes."""
        marker = folder / TOTAL_MARKER
        if folder.is_dir():
            declared = marker.read_text().strip() if marker.is_file() else ""
            if declared != str(total):
                logger.info("chunk total for %s changed (%s -> %d), restarting upload",
                            record_id, declared or "?", total)
                shutil.rmtree(folder)
        folder.mkdir(parents=True, exist_ok=True)
        if not marker.is_file():
            marker.write_text(str(total))

    def _assemble(self, folder: Path, dest: Path, total: int) -> int:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(part_path(dest), "wb") as out:
                for i in range(total):
                    with open(folder / f"{CHUNK_PREFIX}{i}", "rb") as chunk:
                        shutil.copyfileobj(chunk, out)
            size = commit_part(dest)
        except OSError:
            discard_part(dest)
            raise
        shutil.rmtree(folder)
        return size
