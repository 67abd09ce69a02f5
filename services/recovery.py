"""
Quota-gated recovery.

Anonymous visitors who hit an expired share link can trade one unit of quota
for the archived copy.  Records are matched by slug (the case-folded last
path segment) rather than by full URL, because the same share is reachable
through several hosts and casings.  Replaying a slug the visitor already
paid for is free.
"""

from __future__ import annotations

import logging
from typing import Any

from store.quota import QuotaLedger
from store.records import Record, RecordStore
from utils.common import slugify_share_url
from utils.errors import InvalidInputError, QuotaExhaustedError, RecordNotFoundError

logger = logging.getLogger(__name__)


class RecoveryService:
    def __init__(self, store: RecordStore, ledger: QuotaLedger,
                 files_prefix: str = "/files") -> None:
        self.store = store
        self.ledger = ledger
        self.files_prefix = files_prefix.rstrip("/")

    def backup_url(self, record: Record) -> str:
        return f"{self.files_prefix}/{record.backup_path}"

    def find_backup(self, slug: str) -> Record | None:
        """First non-blocked record with a file on disk whose page slug is *slug*.

        The same share can be captured under several URLs, so earlier
        records without a file must not hide a later archived one.
        """
        if not slug:
            return None
        for record in self.store.read_all():
            if record.blocked or slugify_share_url(record.page_url) != slug:
                continue
            if self.store.file_exists(record):
                return record
        return None

    def recover(self, visitor_id: str | None, page_url: str | None) -> dict[str, Any]:
        visitor_id = (visitor_id or "").strip()
        page_url = (page_url or "").strip()
        if not visitor_id:
            raise InvalidInputError("missing X-Visitor-Id header")
        if not page_url:
            raise InvalidInputError("missing required field: pageUrl", field="pageUrl")

        slug = slugify_share_url(page_url)
        record = self.find_backup(slug)
        if record is None:
            raise RecordNotFoundError("no backup", slug=slug)

        with self.ledger.locked():
            quota = self.ledger.get(visitor_id)
            previous = quota.find(slug)
            if previous is not None:
                return {
                    "ok": True,
                    "backupUrl": previous.backup_url,
                    "alreadyRecovered": True,
                    "quota": {"remaining": quota.remaining, "total": quota.total},
                }

            if quota.remaining <= 0:
                raise QuotaExhaustedError(
                    "recovery quota exhausted",
                    quota={"remaining": quota.remaining, "total": quota.total},
                )

            backup_url = self.backup_url(record)
            quota.consume(slug, backup_url)
            self.ledger.save(quota)

        logger.info("visitor %s recovered %s (%d left)", visitor_id, slug, quota.remaining,
                    extra={"record_id": record.id})
        return {
            "ok": True,
            "backupUrl": backup_url,
            "alreadyRecovered": False,
            "quota": {"remaining": quota.remaining, "total": quota.total},
        }

    def quota_status(self, visitor_id: str | None) -> dict[str, Any]:
        visitor_id = (visitor_id or "").strip()
        if not visitor_id:
            raise InvalidInputError("missing X-Visitor-Id header")
        return self.ledger.get(visitor_id).status()
