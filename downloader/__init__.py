"""
Acquisition strategies for archived links.

Three ways a record's binary reaches disk, tried in this order of preference:

  - DirectDownloader: backend HTTP GET with spoofed browser headers
  - BrowserContextDownloader / BypassEngine: fetch from inside a real page
  - ChunkedUploadAssembler: the userscript pushes the blob itself

``FallbackChain`` composes the first two behind the ``Downloader`` protocol.
"""

from downloader.core import (
    ChainResult,
    DownloadAttempt,
    Downloader,
    FallbackChain,
    FetchJob,
    write_atomic,
)
from downloader.direct import DirectDownloader, Strategy, build_strategies, cdn_referer
from downloader.browser import (
    BatchResult,
    BrowserContextDownloader,
    BrowserHandle,
    BypassEngine,
    ProgressEvent,
)
from downloader.upload import ChunkedUploadAssembler, UploadResult

__all__ = [
    # Core
    "ChainResult",
    "DownloadAttempt",
    "Downloader",
    "FallbackChain",
    "FetchJob",
    "write_atomic",
    # Direct fetch
    "DirectDownloader",
    "Strategy",
    "build_strategies",
    "cdn_referer",
    # Browser bypass
    "BatchResult",
    "BrowserContextDownloader",
    "BrowserHandle",
    "BypassEngine",
    "ProgressEvent",
    # Upload
    "ChunkedUploadAssembler",
    "UploadResult",
]
