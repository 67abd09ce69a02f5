"""
Capture ingestion.

The userscript reports ``{title, pageUrl, fileUrl, type, ref?, cookies?}``
for every share page it sees.  A capture is answered immediately; pulling
the binary is scheduled as a fire-and-forget direct download whose failure
only shows up as the file staying absent.

Duplicates key on ``pageUrl``.  Share links carry short-lived signed CDN
URLs, so when a known page comes back while its file is still missing the
stored ``fileUrl`` is rotated to the fresh one before downloading again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from downloader.core import DownloadAttempt, FetchJob
from downloader.direct import DirectDownloader
from store.records import Record, RecordStore
from utils.config import RECORD_TYPES
from utils.errors import InvalidInputError

logger = logging.getLogger(__name__)


@dataclass
class CaptureOutcome:
    """The response body plus the download to schedule, if any."""

    record: Record
    body: dict[str, Any]
    job: FetchJob | None = None


def _require(value: str | None, name: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InvalidInputError(f"missing required field: {name}", field=name)
    return value


class CaptureService:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def capture(self, title: str | None, page_url: str | None, file_url: str | None,
                record_type: str | None = "video", ref: str | None = None,
                cookies: str | None = None) -> CaptureOutcome:
        title = _require(title, "title")
        page_url = _require(page_url, "pageUrl")
        file_url = _require(file_url, "fileUrl")
        record_type = (record_type or "video").strip()
        if record_type not in RECORD_TYPES:
            raise InvalidInputError(f"type must be 'video' or 'image', got {record_type!r}",
                                    field="type")
        cookies = cookies or ""

        with self.store.locked():
            existing = self.store.find_by_page_url(page_url, include_blocked=True)

            if existing is not None and existing.blocked:
                logger.info("capture of blocked page %s ignored (%s)", page_url, existing.id)
                return CaptureOutcome(existing, {"ok": True, "blocked": True, "id": existing.id})

            if existing is not None:
                if self.store.file_exists(existing):
                    return CaptureOutcome(existing,
                                          {"ok": True, "duplicate": True, "id": existing.id})
                if existing.file_url != file_url:
                    existing = self.store.update_file_url(existing.id, file_url)
                job = FetchJob.for_record(existing, self.store.file_path(existing), cookies)
                logger.info("duplicate %s has no file, downloading again", existing.id)
                return CaptureOutcome(
                    existing,
                    {"ok": True, "duplicate": True, "id": existing.id, "needUpload": True},
                    job,
                )

            record = self.store.create(title, page_url, file_url, record_type, ref)

        logger.info("captured %s %s: %s", record.type, record.id, record.title,
                    extra={"record_id": record.id})
        job = FetchJob.for_record(record, self.store.file_path(record), cookies)
        return CaptureOutcome(record, {"ok": True, "id": record.id, "needUpload": True}, job)


def download_in_background(downloader: DirectDownloader, job: FetchJob) -> DownloadAttempt:
    """Background-task body: one direct download, outcome logged only."""
    attempt = downloader.download_job(job)
    if attempt.ok:
        logger.info("background download ok for %s (strategy: %s)",
                    job.record_id, attempt.strategy,
                    extra={"record_id": job.record_id, "strategy": attempt.strategy})
    else:
        logger.warning("background download failed for %s: %s", job.record_id, attempt.error,
                       extra={"record_id": job.record_id})
    return attempt
