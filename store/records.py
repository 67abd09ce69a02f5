"""
Record store: the metadata log of everything that should be archived.

``records.jsonl`` under the data directory holds one JSON object per record,
using the camelCase keys the userscript and admin pages already speak
(``pageUrl``, ``fileUrl``, ``backupPath`` ...).  Whether a record's binary is
actually on disk is never stored: downloads finish after the record is
written, so presence is recomputed from the filesystem on every read.

Mutators (``update_file_url``, ``update_thumbnail``, ``vote``,
``set_blocked``, ``delete``) are read-all → transform → rewrite-all and run
under the file's writer lock.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlparse

from store.jsonl import JsonlFile
from utils.common import new_record_id, sanitize_filename, utc_now_iso
from utils.config import TYPE_FOLDERS, VIDEO_EXTENSIONS
from utils.errors import InvalidInputError, RecordNotFoundError

logger = logging.getLogger(__name__)

RECORDS_FILENAME = "records.jsonl"

# attribute name -> key in the log
_KEYS = {
    "id": "id",
    "title": "title",
    "page_url": "pageUrl",
    "file_url": "fileUrl",
    "type": "type",
    "source": "source",
    "captured_at": "capturedAt",
    "backup_path": "backupPath",
    "thumbnail_path": "thumbnailPath",
    "ref": "ref",
    "blocked": "blocked",
    "like_count": "likeCount",
    "dislike_count": "dislikeCount",
}


@dataclass
class Record:
    """One archived item."""

    id: str
    title: str
    page_url: str
    file_url: str
    type: str = "video"
    backup_path: str = ""
    captured_at: str = ""
    source: str = "lurl"
    thumbnail_path: str | None = None
    ref: str | None = None
    blocked: bool = False
    like_count: int = 0
    dislike_count: int = 0
    # keys written by newer code; carried through rewrites untouched
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Record":
        """Build a record from a log line; raises ValueError without an id."""
        record_id = data.get("id")
        if not record_id or not isinstance(record_id, str):
            raise ValueError("record has no id")
        known = set(_KEYS.values())
        return cls(
            id=record_id,
            title=str(data.get("title") or ""),
            page_url=str(data.get("pageUrl") or ""),
            file_url=str(data.get("fileUrl") or ""),
            type=data.get("type") or "video",
            backup_path=str(data.get("backupPath") or ""),
            captured_at=str(data.get("capturedAt") or ""),
            source=data.get("source") or "lurl",
            thumbnail_path=data.get("thumbnailPath"),
            ref=data.get("ref"),
            blocked=bool(data.get("blocked", False)),
            like_count=int(data.get("likeCount") or 0),
            dislike_count=int(data.get("dislikeCount") or 0),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        for attr in ("id", "title", "page_url", "file_url", "type", "source",
                     "captured_at", "backup_path"):
            d[_KEYS[attr]] = getattr(self, attr)
        if self.thumbnail_path:
            d["thumbnailPath"] = self.thumbnail_path
        if self.ref:
            d["ref"] = self.ref
        if self.blocked:
            d["blocked"] = True
        if self.like_count:
            d["likeCount"] = self.like_count
        if self.dislike_count:
            d["dislikeCount"] = self.dislike_count
        return d


def build_backup_path(title: str, record_id: str, file_url: str, record_type: str) -> str:
    """Return ``<videos|images>/<sanitized title>_<id><ext>``.

    The id suffix keeps two captures with the same title from overwriting
    each other's files.  Forward slashes are used so the path doubles as a
    URL suffix.
    """
    if record_type not in TYPE_FOLDERS:
        raise InvalidInputError(f"unknown record type: {record_type!r}")
    try:
        url_ext = Path(urlparse(file_url).path).suffix.lower()
    except ValueError:
        url_ext = ""
    if url_ext in VIDEO_EXTENSIONS:
        ext = url_ext
    else:
        ext = ".mp4" if record_type == "video" else ".jpg"
    filename = f"{sanitize_filename(title)}_{record_id}{ext}"
    return f"{TYPE_FOLDERS[record_type]}/{filename}"


class RecordStore:
    """Owns ``records.jsonl`` and the media folders beside it."""

    def __init__(self, data_dir: Path | str) -> None:
        self.data_dir = Path(data_dir)
        self._log = JsonlFile(self.data_dir / RECORDS_FILENAME)

    @property
    def path(self) -> Path:
        return self._log.path

    def locked(self):
        """Hold the log's writer lock across a lookup-then-write sequence."""
        return self._log.locked()

    def ensure_dirs(self) -> None:
        for folder in TYPE_FOLDERS.values():
            (self.data_dir / folder).mkdir(parents=True, exist_ok=True)

    # ── basic log operations ─────────────────────────────────────────────

    def append(self, record: Record) -> None:
        self._log.append_object(record.to_dict())

    def read_all(self) -> list[Record]:
        """Return every well-formed record in log order."""
        records: list[Record] = []
        for obj in self._log.read_objects():
            try:
                records.append(Record.from_dict(obj))
            except (TypeError, ValueError):
                logger.debug("skipping record without a usable id: %r", obj.get("id"))
        return records

    def rewrite_all(self, records: list[Record]) -> None:
        self._log.rewrite_objects(r.to_dict() for r in records)

    # ── lookups ──────────────────────────────────────────────────────────

    def get(self, record_id: str) -> Record | None:
        for record in self.read_all():
            if record.id == record_id:
                return record
        return None

    def require(self, record_id: str) -> Record:
        record = self.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"record {record_id} does not exist", id=record_id)
        return record

    def find_by_page_url(self, page_url: str, include_blocked: bool = False) -> Record | None:
        """Return the first record captured from *page_url*."""
        for record in self.read_all():
            if record.page_url != page_url:
                continue
            if record.blocked and not include_blocked:
                continue
            return record
        return None

    def next_id(self) -> str:
        """Time-derived id, bumped past any id already in the log."""
        taken = {r.id for r in self.read_all()}
        now_ms = int(time.time() * 1000)
        record_id = new_record_id(now_ms)
        while record_id in taken:
            now_ms += 1
            record_id = new_record_id(now_ms)
        return record_id

    def create(self, title: str, page_url: str, file_url: str,
               record_type: str = "video", ref: str | None = None) -> Record:
        """Allocate an id and backup path and append a new record."""
        with self._log.locked():
            record_id = self.next_id()
            record = Record(
                id=record_id,
                title=title,
                page_url=page_url,
                file_url=file_url,
                type=record_type,
                backup_path=build_backup_path(title, record_id, file_url, record_type),
                captured_at=utc_now_iso(),
                ref=ref or None,
            )
            self.append(record)
        return record

    # ── filesystem-derived state ─────────────────────────────────────────

    def file_path(self, record: Record) -> Path:
        return self.data_dir / record.backup_path

    def file_exists(self, record: Record) -> bool:
        if not record.backup_path:
            return False
        return self.file_path(record).is_file()

    def missing_records(self) -> list[Record]:
        """Non-blocked records whose backing file is not on disk."""
        return [r for r in self.read_all() if not r.blocked and not self.file_exists(r)]

    # ── mutators ─────────────────────────────────────────────────────────

    def _mutate(self, record_id: str, change: Callable[[Record], None]) -> Record:
        with self._log.locked():
            records = self.read_all()
            for record in records:
                if record.id == record_id:
                    change(record)
                    self.rewrite_all(records)
                    return record
        raise RecordNotFoundError(f"record {record_id} does not exist", id=record_id)

    def update_file_url(self, record_id: str, file_url: str) -> Record:
        def change(record: Record) -> None:
            logger.info("fileUrl rotated for %s: %s -> %s", record_id, record.file_url, file_url)
            record.file_url = file_url
        return self._mutate(record_id, change)

    def update_thumbnail(self, record_id: str, thumbnail_path: str | None) -> Record:
        def change(record: Record) -> None:
            record.thumbnail_path = thumbnail_path or None
        return self._mutate(record_id, change)

    def vote(self, record_id: str, vote: str) -> Record:
        if vote not in ("like", "dislike"):
            raise InvalidInputError(f"vote must be 'like' or 'dislike', got {vote!r}")

        def change(record: Record) -> None:
            if vote == "like":
                record.like_count += 1
            else:
                record.dislike_count += 1
        return self._mutate(record_id, change)

    def set_blocked(self, record_id: str, blocked: bool = True) -> Record:
        def change(record: Record) -> None:
            record.blocked = blocked
        return self._mutate(record_id, change)

    def delete(self, record_id: str) -> Record:
        """Remove a record from the log and delete its backing file."""
        with self._log.locked():
            records = self.read_all()
            target = next((r for r in records if r.id == record_id), None)
            if target is None:
                raise RecordNotFoundError(f"record {record_id} does not exist", id=record_id)
            if self.file_exists(target):
                self.file_path(target).unlink()
            self.rewrite_all([r for r in records if r.id != record_id])
        logger.info("deleted record %s (%s)", record_id, target.title)
        return target
