"""
Visitor quota ledger: ``quota.jsonl``, one object per anonymous visitor.

Kept apart from the record log on purpose: the only link back to a record is
the slug stored in each history entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from store.jsonl import JsonlFile
from utils.common import utc_now_iso
from utils.errors import InvalidInputError

logger = logging.getLogger(__name__)

DEFAULT_FREE_QUOTA = 3


@dataclass
class HistoryEntry:
    slug: str
    backup_url: str
    used_at: str

    def to_dict(self) -> dict[str, str]:
        return {"slug": self.slug, "backupUrl": self.backup_url, "usedAt": self.used_at}


@dataclass
class VisitorQuota:
    visitor_id: str
    used_count: int = 0
    free_quota: int = DEFAULT_FREE_QUOTA
    paid_quota: int = 0
    history: list[HistoryEntry] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return (self.free_quota - self.used_count) + self.paid_quota

    @property
    def total(self) -> int:
        return self.free_quota + self.paid_quota

    def find(self, slug: str) -> HistoryEntry | None:
        for entry in self.history:
            if entry.slug == slug:
                return entry
        return None

    def consume(self, slug: str, backup_url: str) -> HistoryEntry:
        """Charge one recovery for *slug*; callers check ``find`` first."""
        entry = HistoryEntry(slug=slug, backup_url=backup_url, used_at=utc_now_iso())
        self.history.append(entry)
        self.used_count += 1
        return entry

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VisitorQuota":
        visitor_id = data.get("visitorId")
        if not visitor_id:
            raise ValueError("quota entry has no visitorId")
        history = [
            HistoryEntry(
                slug=str(h.get("slug", "")),
                backup_url=str(h.get("backupUrl", "")),
                used_at=str(h.get("usedAt", "")),
            )
            for h in data.get("history") or []
            if isinstance(h, dict)
        ]
        return cls(
            visitor_id=str(visitor_id),
            used_count=int(data.get("usedCount") or 0),
            free_quota=int(data.get("freeQuota", DEFAULT_FREE_QUOTA)),
            paid_quota=int(data.get("paidQuota") or 0),
            history=history,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "visitorId": self.visitor_id,
            "usedCount": self.used_count,
            "freeQuota": self.free_quota,
            "paidQuota": self.paid_quota,
            "history": [h.to_dict() for h in self.history],
        }

    def status(self) -> dict[str, Any]:
        body = self.to_dict()
        body["remaining"] = self.remaining
        body["total"] = self.total
        return body


class QuotaLedger:
    """Read and rewrite per-visitor quota entries."""

    def __init__(self, path: Path | str, free_quota: int = DEFAULT_FREE_QUOTA) -> None:
        self._log = JsonlFile(path)
        self.free_quota = free_quota

    def locked(self):
        return self._log.locked()

    def read_all(self) -> list[VisitorQuota]:
        entries: list[VisitorQuota] = []
        for obj in self._log.read_objects():
            try:
                entries.append(VisitorQuota.from_dict(obj))
            except (TypeError, ValueError):
                logger.debug("skipping malformed quota entry: %r", obj)
        return entries

    def get(self, visitor_id: str) -> VisitorQuota:
        """Return the visitor's entry, or a fresh unsaved one."""
        for entry in self.read_all():
            if entry.visitor_id == visitor_id:
                return entry
        return VisitorQuota(visitor_id=visitor_id, free_quota=self.free_quota)

    def save(self, quota: VisitorQuota) -> None:
        with self._log.locked():
            entries = [e for e in self.read_all() if e.visitor_id != quota.visitor_id]
            entries.append(quota)
            self._log.rewrite_objects(e.to_dict() for e in entries)

    def grant_paid(self, visitor_id: str, amount: int) -> VisitorQuota:
        if amount <= 0:
            raise InvalidInputError("amount must be a positive integer")
        with self._log.locked():
            quota = self.get(visitor_id)
            quota.paid_quota += amount
            self.save(quota)
        logger.info("granted %d paid recoveries to %s", amount, visitor_id)
        return quota
