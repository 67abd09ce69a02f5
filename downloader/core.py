"""
Shared download plumbing: the job/attempt types, the ``Downloader`` protocol
both acquisition strategies implement, and the ordered fallback chain that
composes them.

A failed download is never an exception.  Each downloader reports a
``DownloadAttempt`` and leaves the destination absent; the chain moves on to
the next downloader and stops at the first success.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class FetchJob:
    """Everything a downloader needs to pull one record's binary."""

    record_id: str
    file_url: str
    page_url: str
    dest: Path
    cookies: str = ""
    media_type: str = "video"

    @classmethod
    def for_record(cls, record, dest: Path, cookies: str = "") -> "FetchJob":
        return cls(
            record_id=record.id,
            file_url=record.file_url,
            page_url=record.page_url,
            dest=Path(dest),
            cookies=cookies,
            media_type=record.type,
        )


@dataclass
class DownloadAttempt:
    """One (downloader, strategy, outcome) triple.  Logged, never persisted."""

    downloader: str
    ok: bool
    strategy: str = ""
    size: int = 0
    error: str = ""

    def to_dict(self) -> dict:
        d = {"downloader": self.downloader, "ok": self.ok}
        if self.strategy:
            d["strategy"] = self.strategy
        if self.size:
            d["size"] = self.size
        if self.error:
            d["error"] = self.error
        return d


@runtime_checkable
class Downloader(Protocol):
    name: str

    async def fetch(self, job: FetchJob) -> DownloadAttempt:
        ...


@dataclass
class ChainResult:
    ok: bool
    attempts: list[DownloadAttempt] = field(default_factory=list)

    @property
    def winner(self) -> DownloadAttempt | None:
        for attempt in self.attempts:
            if attempt.ok:
                return attempt
        return None


class FallbackChain:
    """Try downloaders strictly in order; the first success wins."""

    def __init__(self, downloaders: list[Downloader]) -> None:
        if not downloaders:
            raise ValueError("a fallback chain needs at least one downloader")
        self.downloaders = list(downloaders)

    async def fetch(self, job: FetchJob) -> ChainResult:
        result = ChainResult(ok=False)
        for downloader in self.downloaders:
            try:
                attempt = await downloader.fetch(job)
            except Exception as exc:
                logger.exception("record %s: %s raised", job.record_id, downloader.name)
                attempt = DownloadAttempt(downloader.name, False,
                                          error=f"{type(exc).__name__}: {exc}")
            result.attempts.append(attempt)
            if attempt.ok:
                result.ok = True
                logger.info("record %s acquired via %s/%s",
                            job.record_id, attempt.downloader, attempt.strategy)
                break
            logger.info("record %s: %s failed (%s)",
                        job.record_id, downloader.name, attempt.error or "no file")
        return result


# ── Filesystem helpers ────────────────────────────────────────────────────────

def part_path(dest: Path) -> Path:
    """Temporary sibling written before the final rename."""
    return dest.with_name(dest.name + ".part")


def commit_part(dest: Path) -> int:
    """Move ``<dest>.part`` onto *dest*; returns the committed size."""
    tmp = part_path(dest)
    os.replace(tmp, dest)
    return dest.stat().st_size


def discard_part(dest: Path) -> None:
    part_path(dest).unlink(missing_ok=True)


def write_atomic(dest: Path, data: bytes) -> int:
    """Write *data* so *dest* only ever appears complete."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = part_path(dest)
    tmp.write_bytes(data)
    return commit_part(dest)
