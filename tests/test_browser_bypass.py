"""
Tests for downloader/browser.py

A FakeBrowser launcher replaces Chromium; its pages answer the in-page fetch
with scripted payloads, so the per-record procedure, the grouped batch retry
and the browser lifecycle are exercised without Playwright ever starting.
"""
import asyncio
import sys
from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from downloader.browser import (
    BrowserContextDownloader,
    BrowserHandle,
    BypassEngine,
    age_cookie,
    is_challenge_url,
)
from downloader.core import FetchJob, part_path

PAYLOAD = b"\x00\x00\x00\x18ftypmp42" + b"p" * 256


def _build(store, fake_browser, group_size=2, min_bytes=16):
    handle = BrowserHandle(launcher=fake_browser.launch)
    downloader = BrowserContextDownloader(handle, settle_ms=0, min_bytes=min_bytes)
    engine = BypassEngine(handle, downloader, store, group_size=group_size)
    return engine, handle, downloader


def _records(store, count):
    return [store.create(f"clip {i}", f"https://lurl.cc/share{i}",
                         f"https://cdn.lurl.cc/{i}.mp4") for i in range(count)]


def _job(tmp_path, page_url="https://lurl.cc/abc", file_url="https://cdn.lurl.cc/v.mp4"):
    return FetchJob("r1", file_url, page_url, tmp_path / "videos" / "v.mp4")


# ── Helpers ───────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_age_cookie_domain(self):
        assert age_cookie("https://myppt.cc/abc")["domain"] == ".myppt.cc"
        assert age_cookie("https://www.myppt.cc/abc")["domain"] == ".myppt.cc"
        assert age_cookie("https://lurl.cc/abc")["domain"] == ".lurl.cc"
        cookie = age_cookie("https://lurl.cc/abc")
        assert (cookie["name"], cookie["value"]) == ("over18_years", "true")

    def test_challenge_url(self):
        assert is_challenge_url("https://challenges.cloudflare.com/cdn-cgi/x")
        assert not is_challenge_url("https://lurl.cc/abc")


# ── Browser lifecycle ─────────────────────────────────────────────────────────

class TestBrowserHandle:
    def test_lazy_launch_and_reuse(self, fake_browser):
        handle = BrowserHandle(launcher=fake_browser.launch)

        async def run():
            assert not handle.is_open
            first = await handle.acquire()
            second = await handle.acquire()
            return first, second

        first, second = asyncio.run(run())
        assert first is second
        assert fake_browser.launches == 1
        assert handle.is_open

    def test_release_then_relaunch(self, fake_browser):
        handle = BrowserHandle(launcher=fake_browser.launch)

        async def run():
            await handle.acquire()
            await handle.release()
            assert not handle.is_open
            await handle.acquire()
            await handle.release()

        asyncio.run(run())
        assert fake_browser.launches == 2
        assert handle.launch_count == 2
        assert fake_browser.closes == 2

    def test_release_when_closed_is_noop(self, fake_browser):
        handle = BrowserHandle(launcher=fake_browser.launch)
        asyncio.run(handle.release())
        assert fake_browser.closes == 0

    def test_nested_leases_close_once_at_the_end(self, fake_browser):
        handle = BrowserHandle(launcher=fake_browser.launch)

        async def run():
            async with handle.lease():
                await handle.acquire()
                async with handle.lease():
                    await handle.acquire()
                assert handle.is_open
            assert not handle.is_open

        asyncio.run(run())
        assert fake_browser.launches == 1
        assert fake_browser.closes == 1


# ── Per-record page fetch ─────────────────────────────────────────────────────

class TestBrowserContextDownloader:
    def test_success_writes_file_and_closes_page(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = PAYLOAD
        _, handle, dl = _build(None, fake_browser)
        job = _job(tmp_path)

        attempt = asyncio.run(dl.fetch(job))

        assert attempt.ok
        assert attempt.strategy == "page-fetch"
        assert attempt.size == len(PAYLOAD)
        assert job.dest.read_bytes() == PAYLOAD
        assert fake_browser.visited == ["https://lurl.cc/abc"]
        assert fake_browser.cookies[0]["domain"] == ".lurl.cc"
        assert all(p.closed for p in fake_browser.pages)

    def test_in_page_error_reported(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = "HTTP 403"
        _, _, dl = _build(None, fake_browser)
        job = _job(tmp_path)

        attempt = asyncio.run(dl.fetch(job))

        assert not attempt.ok
        assert attempt.error == "HTTP 403"
        assert not job.dest.exists()
        assert fake_browser.pages[0].closed

    def test_undersized_payload_rejected(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = b"tiny"
        _, _, dl = _build(None, fake_browser, min_bytes=16)
        job = _job(tmp_path)

        attempt = asyncio.run(dl.fetch(job))

        assert not attempt.ok
        assert "too small" in attempt.error
        assert not job.dest.exists()

    def test_evaluate_exception_caught(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = PlaywrightError("Target closed")
        _, _, dl = _build(None, fake_browser)
        job = _job(tmp_path)

        attempt = asyncio.run(dl.fetch(job))

        assert not attempt.ok
        assert "Target closed" in attempt.error
        assert fake_browser.pages[0].closed

    def test_navigation_timeout_tolerated(self, tmp_path, fake_browser):
        fake_browser.goto_timeouts.add("https://lurl.cc/abc")
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = PAYLOAD
        _, _, dl = _build(None, fake_browser)

        assert asyncio.run(dl.fetch(_job(tmp_path))).ok

    def test_challenge_waited_out(self, tmp_path, fake_browser):
        fake_browser.landing["https://lurl.cc/abc"] = "https://challenges.cloudflare.com/turnstile"
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = PAYLOAD
        _, _, dl = _build(None, fake_browser)

        assert asyncio.run(dl.fetch(_job(tmp_path))).ok
        assert fake_browser.challenge_waits == 1

    def test_challenge_timeout_continues(self, tmp_path, fake_browser):
        fake_browser.landing["https://lurl.cc/abc"] = "https://challenges.cloudflare.com/turnstile"
        fake_browser.challenge_resolves = False
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = PAYLOAD
        _, _, dl = _build(None, fake_browser)

        attempt = asyncio.run(dl.fetch(_job(tmp_path)))

        assert fake_browser.challenge_waits == 1
        assert attempt.ok

    def test_ordinary_page_title_checked_without_waiting(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = PAYLOAD
        _, _, dl = _build(None, fake_browser)

        assert asyncio.run(dl.fetch(_job(tmp_path))).ok
        assert fake_browser.title_waits == 0
        assert fake_browser.challenge_waits == 0

    def test_interstitial_title_waited_out(self, tmp_path, fake_browser):
        fake_browser.title = "Just a moment..."
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = PAYLOAD
        _, _, dl = _build(None, fake_browser)

        assert asyncio.run(dl.fetch(_job(tmp_path))).ok
        assert fake_browser.title_waits == 1

    def test_click_download_when_page_fetch_refused(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = "Failed to fetch"
        fake_browser.downloads["https://cdn.lurl.cc/v.mp4"] = PAYLOAD
        _, _, dl = _build(None, fake_browser)
        job = _job(tmp_path)

        attempt = asyncio.run(dl.fetch(job))

        assert attempt.ok
        assert attempt.strategy == "click-download"
        assert attempt.size == len(PAYLOAD)
        assert job.dest.read_bytes() == PAYLOAD
        assert not part_path(job.dest).exists()
        assert fake_browser.clicked == [("https://cdn.lurl.cc/v.mp4", "v.mp4")]
        assert fake_browser.pages[0].closed

    def test_failed_click_download_keeps_fetch_error(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = "HTTP 403"
        fake_browser.downloads["https://cdn.lurl.cc/v.mp4"] = "canceled"
        _, _, dl = _build(None, fake_browser)
        job = _job(tmp_path)

        attempt = asyncio.run(dl.fetch(job))

        assert not attempt.ok
        assert attempt.error == "HTTP 403"
        assert not job.dest.exists()

    def test_undersized_click_download_discarded(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = "HTTP 403"
        fake_browser.downloads["https://cdn.lurl.cc/v.mp4"] = b"tiny"
        _, _, dl = _build(None, fake_browser, min_bytes=16)
        job = _job(tmp_path)

        assert not asyncio.run(dl.fetch(job)).ok
        assert not job.dest.exists()
        assert not part_path(job.dest).exists()

    def test_unexpected_error_reported_not_raised(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.lurl.cc/v.mp4"] = KeyError("data")
        _, _, dl = _build(None, fake_browser)

        attempt = asyncio.run(dl.fetch(_job(tmp_path)))

        assert not attempt.ok
        assert attempt.error.startswith("KeyError")
        assert fake_browser.pages[0].closed

    def test_myppt_cookie(self, tmp_path, fake_browser):
        fake_browser.results["https://cdn.myppt.cc/v.mp4"] = PAYLOAD
        _, _, dl = _build(None, fake_browser)
        job = _job(tmp_path, "https://myppt.cc/xyz", "https://cdn.myppt.cc/v.mp4")

        assert asyncio.run(dl.fetch(job)).ok
        assert fake_browser.cookies[0]["domain"] == ".myppt.cc"


# ── Batch retry ───────────────────────────────────────────────────────────────

class TestBypassEngine:
    def test_batch_counts_and_presence(self, store, fake_browser):
        records = _records(store, 5)
        for i in (0, 2, 4):
            fake_browser.results[f"https://cdn.lurl.cc/{i}.mp4"] = PAYLOAD
        engine, _, _ = _build(store, fake_browser)

        result = asyncio.run(engine.batch_retry(records))

        assert result.total == 5
        assert result.success_count == 3
        assert sorted(result.success_ids) == sorted(records[i].id for i in (0, 2, 4))
        assert not result.cancelled
        for i, record in enumerate(records):
            assert store.file_exists(record) == (i in (0, 2, 4))
        assert store.missing_records() == [records[1], records[3]]

    def test_browser_closed_after_batch(self, store, fake_browser):
        records = _records(store, 3)
        engine, handle, _ = _build(store, fake_browser)

        asyncio.run(engine.batch_retry(records))

        assert fake_browser.launches == 1
        assert fake_browser.closes == 1
        assert not handle.is_open
        assert all(p.closed for p in fake_browser.pages)

    def test_groups_run_sequentially(self, store, fake_browser):
        records = _records(store, 5)
        # slowest item first so a leaking group would overlap visibly
        fake_browser.delays = {"https://cdn.lurl.cc/0.mp4": 5, "https://cdn.lurl.cc/2.mp4": 5}
        engine, _, _ = _build(store, fake_browser, group_size=2)

        asyncio.run(engine.batch_retry(records))

        assert fake_browser.max_active == 2
        events = fake_browser.events
        groups = [records[0:2], records[2:4], records[4:5]]
        for earlier, later in zip(groups, groups[1:]):
            last_end = max(events.index(("end", r.file_url)) for r in earlier)
            first_start = min(events.index(("start", r.file_url)) for r in later)
            assert last_end < first_start

    def test_progress_callback(self, store, fake_browser):
        records = _records(store, 3)
        fake_browser.results["https://cdn.lurl.cc/1.mp4"] = PAYLOAD
        engine, _, _ = _build(store, fake_browser)
        seen = []

        def on_progress(completed, total, record, attempt):
            seen.append((completed, total, record.id, attempt.ok))

        asyncio.run(engine.batch_retry(records, on_progress=on_progress))

        assert [s[0] for s in seen] == [1, 2, 3]
        assert {s[1] for s in seen} == {3}
        assert sorted(s[2] for s in seen) == sorted(r.id for r in records)
        assert [s[3] for s in seen].count(True) == 1

    def test_callback_error_does_not_abort(self, store, fake_browser):
        records = _records(store, 3)
        for r in records:
            fake_browser.results[r.file_url] = PAYLOAD
        engine, _, _ = _build(store, fake_browser)

        def explode(*args):
            raise RuntimeError("observer bug")

        result = asyncio.run(engine.batch_retry(records, on_progress=explode))
        assert result.success_count == 3

    def test_item_failure_does_not_abort(self, store, fake_browser):
        records = _records(store, 4)
        fake_browser.results[records[0].file_url] = PlaywrightError("crash")
        fake_browser.results[records[3].file_url] = PAYLOAD
        engine, _, _ = _build(store, fake_browser)

        result = asyncio.run(engine.batch_retry(records))
        assert result.success_ids == [records[3].id]

    def test_cancel_between_groups(self, store, fake_browser):
        records = _records(store, 6)
        engine, _, _ = _build(store, fake_browser, group_size=2)

        async def run():
            cancel = asyncio.Event()

            def on_progress(completed, total, record, attempt):
                cancel.set()

            return await engine.batch_retry(records, on_progress=on_progress,
                                            cancel_event=cancel)

        result = asyncio.run(run())

        assert result.cancelled
        assert result.processed == 2
        assert len(fake_browser.pages) == 2
        assert fake_browser.closes == 1

    def test_closing_stream_early_releases_browser(self, store, fake_browser):
        records = _records(store, 4)
        engine, handle, _ = _build(store, fake_browser, group_size=4)

        async def run():
            stream = engine.iter_retry(records)
            first = await stream.__anext__()
            await stream.aclose()
            return first

        first = asyncio.run(run())

        assert first.completed == 1
        assert first.total == 4
        assert not handle.is_open
        assert fake_browser.closes == 1

    def test_empty_batch_never_launches(self, store, fake_browser):
        engine, _, _ = _build(store, fake_browser)
        result = asyncio.run(engine.batch_retry([]))
        assert result.to_dict() == {"successCount": 0, "successIds": [], "total": 0,
                                    "cancelled": False}
        assert fake_browser.launches == 0

    def test_unexpected_downloader_error_caught(self, store, fake_browser):
        records = _records(store, 2)
        engine, _, dl = _build(store, fake_browser)

        async def broken(job):
            raise RuntimeError("boom")

        dl.fetch = broken
        result = asyncio.run(engine.batch_retry(records))
        assert result.success_count == 0
        assert result.processed == 2

    def test_group_size_validated(self, store, fake_browser):
        with pytest.raises(ValueError):
            _build(store, fake_browser, group_size=0)
