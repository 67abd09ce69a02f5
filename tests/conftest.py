"""
Pytest fixtures for the archive backend.

Nothing here touches the network or a real browser:

- ``FakeResponse`` stands in for a streamed ``requests`` response and is fed
  to ``DirectDownloader`` through a mocked session.
- ``FakeBrowser`` is a launcher for ``BrowserHandle`` whose pages serve
  scripted in-page fetch results and record what happened to them.
"""

import asyncio
import base64
import sys
from pathlib import Path

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from playwright.async_api import TimeoutError as PlaywrightTimeoutError  # noqa: E402

from store.records import RecordStore  # noqa: E402
from utils.config import AppConfig  # noqa: E402


# ── HTTP fakes ────────────────────────────────────────────────────────────────

class FakeResponse:
    """Minimal streamed response: context manager + iter_content."""

    def __init__(self, status_code: int = 200, body: bytes = b"",
                 content_type: str = "video/mp4", fail_after: int | None = None):
        self.status_code = status_code
        self.body = body
        self.headers = {"content-type": content_type, "content-length": str(len(body))}
        self.fail_after = fail_after
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def iter_content(self, chunk_size: int = 1024):
        body = self.body if self.fail_after is None else self.body[:self.fail_after]
        for start in range(0, len(body), chunk_size):
            yield body[start:start + chunk_size]
        if self.fail_after is not None:
            raise requests.ConnectionError("connection reset mid-transfer")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False


# ── Browser fakes ─────────────────────────────────────────────────────────────

class FakeSession:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.context = FakeContext(browser)

    async def close(self) -> None:
        self.browser.closes += 1


class FakeContext:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser

    async def new_page(self):
        page = FakePage(self.browser)
        self.browser.pages.append(page)
        return page

    async def add_cookies(self, cookies):
        self.browser.cookies.extend(cookies)


class FakePage:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.url = "about:blank"
        self.closed = False
        self._target = ""

    async def goto(self, url, wait_until=None, timeout=None):
        self.browser.visited.append(url)
        self._target = url
        self.url = self.browser.landing.get(url, url)
        if url in self.browser.goto_timeouts:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")

    async def wait_for_url(self, predicate, wait_until=None, timeout=None):
        self.browser.challenge_waits += 1
        if not self.browser.challenge_resolves:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")
        self.url = self._target

    async def title(self):
        return self.browser.title

    async def wait_for_function(self, expression, arg=None, timeout=None):
        self.browser.title_waits += 1
        return True

    async def wait_for_timeout(self, ms):
        await asyncio.sleep(0)

    def expect_download(self, timeout=None):
        return FakeDownloadInfo(self, timeout)

    async def evaluate(self, script, arg):
        url = arg["url"]
        if "minBytes" not in arg:
            self.browser.clicked.append((url, arg["filename"]))
            return {"triggered": True}
        self.browser.events.append(("start", url))
        self.browser.active += 1
        self.browser.max_active = max(self.browser.max_active, self.browser.active)
        try:
            await asyncio.sleep(0.01 * self.browser.delays.get(url, 1))
            outcome = self.browser.results.get(url, "HTTP 403")
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, str):
                return {"error": outcome}
            if len(outcome) < arg["minBytes"]:
                return {"error": f"payload too small: {len(outcome)} bytes"}
            return {"data": base64.b64encode(outcome).decode("ascii"), "size": len(outcome)}
        finally:
            self.browser.active -= 1
            self.browser.events.append(("end", url))

    async def close(self):
        self.closed = True


class FakeDownload:
    def __init__(self, outcome):
        self.outcome = outcome

    async def failure(self):
        return self.outcome if isinstance(self.outcome, str) else None

    async def save_as(self, path):
        Path(path).write_bytes(self.outcome)


class FakeDownloadInfo:
    """``page.expect_download()`` double: resolves from the last click."""

    def __init__(self, page: "FakePage", timeout=None):
        self.page = page
        self.timeout = timeout
        self._download = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            return False
        browser = self.page.browser
        url = browser.clicked[-1][0] if browser.clicked else None
        if url not in browser.downloads:
            raise PlaywrightTimeoutError(f"Timeout {self.timeout}ms exceeded")
        self._download = FakeDownload(browser.downloads[url])
        return False

    @property
    def value(self):
        async def resolve():
            return self._download
        return resolve()


class FakeBrowser:
    """Launcher double.  ``results`` maps file URL to bytes, an error string
    or an exception raised from ``evaluate``; ``downloads`` maps file URL to
    the bytes (or failure string) an ``<a download>`` click produces."""

    def __init__(self):
        self.results: dict = {}
        self.delays: dict = {}
        self.landing: dict = {}
        self.goto_timeouts: set = set()
        self.challenge_resolves = True
        self.challenge_waits = 0
        self.title = "share"
        self.title_waits = 0
        self.launches = 0
        self.closes = 0
        self.downloads: dict = {}
        self.clicked: list = []
        self.pages: list = []
        self.cookies: list = []
        self.visited: list = []
        self.events: list = []
        self.active = 0
        self.max_active = 0

    async def launch(self, headless: bool = True) -> FakeSession:
        self.launches += 1
        return FakeSession(self)


class FakeDirect:
    """Downloader double for the direct-fetch slot; never touches the network."""

    name = "direct"

    def __init__(self, payloads: dict | None = None):
        self.payloads = payloads or {}
        self.jobs: list = []

    def download_job(self, job):
        from downloader.core import DownloadAttempt, write_atomic
        self.jobs.append(job)
        data = self.payloads.get(job.file_url)
        if data is None:
            return DownloadAttempt(self.name, False, "referer-only", error="HTTP 403")
        size = write_atomic(job.dest, data)
        return DownloadAttempt(self.name, True, "referer-only", size=size)

    async def fetch(self, job):
        return self.download_job(job)

    def close(self):
        pass


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture()
def data_dir(tmp_path) -> Path:
    path = tmp_path / "archive"
    path.mkdir()
    return path


@pytest.fixture()
def store(data_dir) -> RecordStore:
    s = RecordStore(data_dir)
    s.ensure_dirs()
    return s


@pytest.fixture()
def config(data_dir) -> AppConfig:
    return AppConfig.from_dict({
        "data_dir": data_dir,
        "free_quota": 3,
        "bypass_concurrency": 2,
        "min_payload_bytes": 16,
        "files_prefix": "/files",
    })


@pytest.fixture()
def fake_browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture()
def fake_direct() -> FakeDirect:
    return FakeDirect()


@pytest.fixture()
def fake_response():
    return FakeResponse
