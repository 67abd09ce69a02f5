"""
Browser-context bypass engine.

When the direct downloader cannot get past the CDN's hotlink / bot checks,
the file is fetched from inside a real Chromium page that has loaded the
original share page.  The request then genuinely originates from the site,
so Referer / Origin / Sec-Fetch-* are set by the browser itself, which no
amount of header spoofing from the backend reproduces.

Pieces:
  - BrowserHandle: the one shared browser, lazily launched on first use and
    closed explicitly once the last lease ends (never kept warm).
  - BrowserContextDownloader: the per-record page procedure, with an
    <a download> click as the fallback when the in-page fetch is refused.
  - BypassEngine: batch retry in fixed-size groups.  Groups run one after
    another; the records inside a group are fetched concurrently, one page
    each.  Progress is an async stream of events and a batch can be stopped
    cooperatively between groups.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from downloader.core import (
    DownloadAttempt,
    FetchJob,
    commit_part,
    discard_part,
    part_path,
    write_atomic,
)
from store.records import Record, RecordStore
from utils.common import format_bytes
from utils.config import AGE_COOKIE_NAME, AGE_COOKIE_VALUE, CHALLENGE_HOSTS

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]

# Applied at context level so every page gets it before any site script runs.
STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
Object.defineProperty(navigator, 'plugins', {get: () => [1, 2, 3, 4, 5]});
Object.defineProperty(navigator, 'languages', {get: () => ['zh-TW', 'zh', 'en-US', 'en']});
"""

CHALLENGE_TITLE_MARKERS = ("Just a moment", "Attention Required")

# Runs inside the share page.  No credentials: the CDN only checks that the
# request comes from the site, and the page context guarantees that.  The
# bytes come back base64-encoded because only JSON crosses the page boundary;
# String.fromCharCode is fed in 32 KB slices to stay under the argument limit.
PAGE_FETCH_JS = """
async ({url, minBytes}) => {
    try {
        const response = await fetch(url, {credentials: 'omit'});
        if (!response.ok) {
            return {error: `HTTP ${response.status}`};
        }
        const blob = await response.blob();
        if (blob.size < minBytes) {
            return {error: `payload too small: ${blob.size} bytes`};
        }
        const bytes = new Uint8Array(await blob.arrayBuffer());
        let binary = '';
        const step = 0x8000;
        for (let i = 0; i < bytes.length; i += step) {
            binary += String.fromCharCode.apply(null, bytes.subarray(i, i + step));
        }
        return {data: btoa(binary), size: blob.size};
    } catch (err) {
        return {error: String((err && err.message) || err)};
    }
}
"""

# Fallback when the in-page fetch is refused: let the browser itself download
# the file through an <a download> click, as a user would.
CLICK_DOWNLOAD_JS = """
({url, filename}) => {
    const link = document.createElement('a');
    link.href = url;
    link.download = filename;
    link.style.display = 'none';
    document.body.appendChild(link);
    link.click();
    document.body.removeChild(link);
    return {triggered: true};
}
"""


def age_cookie(page_url: str) -> dict[str, str]:
    """The age-verification cookie, scoped to the share site's domain."""
    host = (urlparse(page_url).hostname or "").lower()
    domain = ".myppt.cc" if host.endswith("myppt.cc") else ".lurl.cc"
    return {"name": AGE_COOKIE_NAME, "value": AGE_COOKIE_VALUE, "domain": domain, "path": "/"}


def is_challenge_url(url: str) -> bool:
    return any(host in url for host in CHALLENGE_HOSTS)


def _has_challenge_title(title: str) -> bool:
    return any(marker in title for marker in CHALLENGE_TITLE_MARKERS)


# ── Browser lifecycle ─────────────────────────────────────────────────────────

@dataclass
class BrowserSession:
    """A launched Playwright driver, browser and context."""

    context: Any
    browser: Any = None
    playwright: Any = None

    async def close(self) -> None:
        if self.browser is not None:
            await self.browser.close()
        if self.playwright is not None:
            await self.playwright.stop()


Launcher = Callable[[bool], Awaitable[BrowserSession]]


async def launch_chromium(headless: bool = True) -> BrowserSession:
    """Start Chromium with the automation flags masked."""
    pw = await async_playwright().start()
    try:
        browser = await pw.chromium.launch(headless=headless, args=LAUNCH_ARGS)
        context = await browser.new_context(
            user_agent=USER_AGENT,
            viewport={"width": 1920, "height": 1080},
            locale="zh-TW",
            accept_downloads=True,
        )
        await context.add_init_script(STEALTH_SCRIPT)
    except Exception:
        await pw.stop()
        raise
    logger.info("bypass browser started (headless=%s)", headless)
    return BrowserSession(context=context, browser=browser, playwright=pw)


class BrowserHandle:
    """Owner of the single shared browser.

    ``acquire()`` launches on first use and hands every later caller the same
    context.  ``lease()`` scopes a unit of work (a batch, a single retry);
    when the last open lease ends the browser is closed, so the next call
    relaunches from scratch.  ``release()`` closes unconditionally.
    """

    def __init__(self, headless: bool = True, launcher: Launcher | None = None) -> None:
        self.headless = headless
        self._launcher = launcher or launch_chromium
        self._session: BrowserSession | None = None
        self._leases = 0
        self._lock = asyncio.Lock()
        self.launch_count = 0

    @property
    def is_open(self) -> bool:
        return self._session is not None

    async def acquire(self):
        async with self._lock:
            if self._session is None:
                self._session = await self._launcher(self.headless)
                self.launch_count += 1
            return self._session.context

    async def release(self) -> None:
        async with self._lock:
            session, self._session = self._session, None
        if session is not None:
            try:
                await session.close()
            except PlaywrightError as exc:
                logger.warning("error while closing bypass browser: %s", exc)
            logger.info("bypass browser closed")

    @asynccontextmanager
    async def lease(self) -> AsyncIterator["BrowserHandle"]:
        self._leases += 1
        try:
            yield self
        finally:
            self._leases -= 1
            if self._leases == 0:
                await self.release()


# ── Per-record page fetch ─────────────────────────────────────────────────────

class BrowserContextDownloader:
    """Fetch one file from inside the share page it belongs to."""

    name = "browser"

    def __init__(self, handle: BrowserHandle, nav_timeout_ms: int = 20000,
                 challenge_timeout_ms: int = 15000, settle_ms: int = 500,
                 min_bytes: int = 1000, download_timeout_ms: int = 60000) -> None:
        self.handle = handle
        self.nav_timeout_ms = nav_timeout_ms
        self.challenge_timeout_ms = challenge_timeout_ms
        self.settle_ms = settle_ms
        self.min_bytes = min_bytes
        self.download_timeout_ms = download_timeout_ms

    def _failed(self, error: str) -> DownloadAttempt:
        return DownloadAttempt(self.name, False, "page-fetch", error=error)

    async def _click_download(self, page, job: FetchJob) -> int | None:
        """Trigger a browser download of the file; returns the saved size or None."""
        try:
            async with page.expect_download(timeout=self.download_timeout_ms) as info:
                await page.evaluate(CLICK_DOWNLOAD_JS,
                                    {"url": job.file_url, "filename": job.dest.name})
            download = await info.value
            failure = await download.failure()
            if failure:
                logger.debug("click download failed for %s: %s", job.record_id, failure)
                return None
            job.dest.parent.mkdir(parents=True, exist_ok=True)
            await download.save_as(part_path(job.dest))
        except PlaywrightError as exc:
            logger.debug("click download unavailable for %s: %s", job.record_id, exc)
            discard_part(job.dest)
            return None

        if part_path(job.dest).stat().st_size < self.min_bytes:
            discard_part(job.dest)
            return None
        return commit_part(job.dest)

    async def _navigate(self, page, page_url: str) -> None:
        try:
            await page.goto(page_url, wait_until="domcontentloaded",
                            timeout=self.nav_timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug("navigation timeout for %s, continuing", page_url)

    async def _wait_for_challenge(self, page) -> None:
        """Give an interstitial bot check time to resolve itself."""
        try:
            if is_challenge_url(page.url):
                logger.info("challenge page at %s, waiting", page.url)
                await page.wait_for_url(lambda url: not is_challenge_url(url),
                                        wait_until="domcontentloaded",
                                        timeout=self.challenge_timeout_ms)
            elif _has_challenge_title(await page.title()):
                logger.info("challenge interstitial on %s, waiting", page.url)
                await page.wait_for_function(
                    "(markers) => !markers.some(m => document.title.includes(m))",
                    arg=list(CHALLENGE_TITLE_MARKERS),
                    timeout=self.challenge_timeout_ms,
                )
        except PlaywrightTimeoutError:
            logger.debug("challenge wait timed out on %s, continuing", page.url)

    async def fetch(self, job: FetchJob) -> DownloadAttempt:
        try:
            context = await self.handle.acquire()
            page = await context.new_page()
        except PlaywrightError as exc:
            return self._failed(f"browser unavailable: {exc}")
        except Exception as exc:
            logger.exception("bypass browser could not open a page")
            return self._failed(f"browser unavailable: {type(exc).__name__}: {exc}")

        try:
            await context.add_cookies([age_cookie(job.page_url)])
            await self._navigate(page, job.page_url)
            await self._wait_for_challenge(page)
            await page.wait_for_timeout(self.settle_ms)

            result = await page.evaluate(
                PAGE_FETCH_JS, {"url": job.file_url, "minBytes": self.min_bytes}
            )
            if not isinstance(result, dict) or result.get("error"):
                error = result.get("error") if isinstance(result, dict) else "no result"
                logger.info("page fetch failed for %s (%s), trying click download",
                            job.record_id, error)
                size = await self._click_download(page, job)
                if size is None:
                    logger.warning("page fetch failed for %s: %s", job.record_id, error)
                    return self._failed(str(error))
                logger.info("click download ok for %s: %s (%s)",
                            job.record_id, job.dest.name, format_bytes(size))
                return DownloadAttempt(self.name, True, "click-download", size=size)

            data = base64.b64decode(result.get("data") or "", validate=True)
            if len(data) < self.min_bytes:
                return self._failed(f"payload too small: {len(data)} bytes")

            size = await asyncio.to_thread(write_atomic, job.dest, data)
            logger.info("page fetch ok for %s: %s (%s)",
                        job.record_id, job.dest.name, format_bytes(size))
            return DownloadAttempt(self.name, True, "page-fetch", size=size)

        except (PlaywrightError, binascii.Error, OSError) as exc:
            logger.warning("page fetch failed for %s: %s", job.record_id, exc)
            return self._failed(str(exc))
        except Exception as exc:
            logger.exception("unexpected page fetch error for %s", job.record_id)
            return self._failed(f"{type(exc).__name__}: {exc}")
        finally:
            try:
                await page.close()
            except PlaywrightError as exc:
                logger.debug("page close failed: %s", exc)


# ── Batch retry ───────────────────────────────────────────────────────────────

DEFAULT_GROUP_SIZE = 4

ProgressCallback = Callable[[int, int, Record, DownloadAttempt], Any]


@dataclass
class ProgressEvent:
    completed: int
    total: int
    record: Record
    attempt: DownloadAttempt

    def to_dict(self) -> dict:
        return {
            "completed": self.completed,
            "total": self.total,
            "id": self.record.id,
            "result": self.attempt.to_dict(),
        }


@dataclass
class BatchResult:
    total: int
    success_count: int = 0
    success_ids: list[str] = field(default_factory=list)
    processed: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "successCount": self.success_count,
            "successIds": self.success_ids,
            "total": self.total,
            "cancelled": self.cancelled,
        }


class BypassEngine:
    """Grouped batch retry of records through the browser."""

    def __init__(self, handle: BrowserHandle, downloader: BrowserContextDownloader,
                 store: RecordStore, group_size: int = DEFAULT_GROUP_SIZE) -> None:
        if group_size < 1:
            raise ValueError("group_size must be at least 1")
        self.handle = handle
        self.downloader = downloader
        self.store = store
        self.group_size = group_size

    async def _retry_one(self, record: Record) -> tuple[Record, DownloadAttempt]:
        job = FetchJob.for_record(record, self.store.file_path(record))
        try:
            attempt = await self.downloader.fetch(job)
        except Exception as exc:
            logger.exception("unexpected failure retrying %s", record.id)
            attempt = DownloadAttempt(self.downloader.name, False, error=str(exc))
        return record, attempt

    async def iter_retry(self, records: list[Record],
                         cancel_event: asyncio.Event | None = None,
                         ) -> AsyncIterator[ProgressEvent]:
        """Yield one event per record as it finishes.

        Group N+1 never starts before group N has fully resolved.  Setting
        *cancel_event* stops the batch before the next group; closing the
        generator early cancels whatever is still in flight.  The browser is
        released when the stream ends either way.
        """
        total = len(records)
        completed = 0
        pending: list[asyncio.Task] = []
        logger.info("bypass retry of %d records (group size %d)", total, self.group_size)
        async with self.handle.lease():
            try:
                for start in range(0, total, self.group_size):
                    if cancel_event is not None and cancel_event.is_set():
                        logger.info("bypass retry cancelled after %d/%d", completed, total)
                        break
                    group = records[start:start + self.group_size]
                    pending = [asyncio.ensure_future(self._retry_one(r)) for r in group]
                    for next_done in asyncio.as_completed(pending):
                        record, attempt = await next_done
                        completed += 1
                        yield ProgressEvent(completed, total, record, attempt)
                    pending = []
            finally:
                for task in pending:
                    task.cancel()

    async def batch_retry(self, records: list[Record],
                          on_progress: ProgressCallback | None = None,
                          cancel_event: asyncio.Event | None = None) -> BatchResult:
        """Retry *records* and summarise; ``on_progress(completed, total, record, result)``."""
        result = BatchResult(total=len(records))
        async for event in self.iter_retry(records, cancel_event):
            result.processed = event.completed
            if event.attempt.ok:
                result.success_count += 1
                result.success_ids.append(event.record.id)
            if on_progress is not None:
                try:
                    on_progress(event.completed, event.total, event.record, event.attempt)
                except Exception:
                    logger.exception("progress callback failed")
        result.cancelled = result.processed < result.total
        logger.info("bypass retry done: %d/%d succeeded", result.success_count, result.total)
        return result
