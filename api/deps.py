"""
Dependency wiring for the API.

Everything a route needs (stores, downloaders, services) is built once per
application into an ``ArchiveContext`` and parked on ``app.state``.  Routes
pull it in with ``Depends(get_context)``, and tests build their own context
with fake downloaders or a fake browser launcher.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from downloader.browser import BrowserContextDownloader, BrowserHandle, BypassEngine, Launcher
from downloader.core import FallbackChain
from downloader.direct import DirectDownloader
from downloader.upload import ChunkedUploadAssembler
from services.capture import CaptureService
from services.recovery import RecoveryService
from store.quota import QuotaLedger
from store.records import RecordStore
from utils.config import AppConfig


@dataclass
class ArchiveContext:
    config: AppConfig
    store: RecordStore
    ledger: QuotaLedger
    direct: DirectDownloader
    browser_handle: BrowserHandle
    browser: BrowserContextDownloader
    chain: FallbackChain
    bypass: BypassEngine
    assembler: ChunkedUploadAssembler
    capture: CaptureService
    recovery: RecoveryService

    @classmethod
    def build(cls, config: AppConfig, direct: DirectDownloader | None = None,
              launcher: Launcher | None = None,
              browser: BrowserContextDownloader | None = None) -> "ArchiveContext":
        store = RecordStore(config.data_dir)
        ledger = QuotaLedger(config.quota_file, free_quota=config.free_quota)
        direct = direct or DirectDownloader(timeout=config.direct_timeout)
        if browser is not None:
            handle = browser.handle
        else:
            handle = BrowserHandle(headless=config.headless, launcher=launcher)
            browser = BrowserContextDownloader(
                handle,
                nav_timeout_ms=config.nav_timeout_ms,
                challenge_timeout_ms=config.challenge_timeout_ms,
                min_bytes=config.min_payload_bytes,
            )
        return cls(
            config=config,
            store=store,
            ledger=ledger,
            direct=direct,
            browser_handle=handle,
            browser=browser,
            chain=FallbackChain([direct, browser]),
            bypass=BypassEngine(handle, browser, store, group_size=config.bypass_concurrency),
            assembler=ChunkedUploadAssembler(store),
            capture=CaptureService(store),
            recovery=RecoveryService(store, ledger, files_prefix=config.files_prefix),
        )


def get_context(request: Request) -> ArchiveContext:
    """FastAPI dependency: the application's ArchiveContext."""
    return request.app.state.archive
