"""
Direct fetch downloader: plain HTTP GET from the backend with spoofed
browser headers.

The CDNs enforce hotlink protection through Referer / Origin /
Sec-Fetch-Site checks, and which referer they expect depends on the CDN
vendor (and sometimes on whether a session cookie rides along).  So a fetch
is an ordered list of strategies, cheapest-likeliest first:

    1. cookie+referer    cookies captured by the userscript + CDN referer
    2. referer-only      CDN referer alone
    3. pageUrl-referer   the original share page as referer

Each strategy is a single GET.  A non-2xx status, a network error, or an
HTML error page served as 200 falls through to the next one.  Exhausting
the list returns False; nothing is raised, and the absent file is the
failure signal.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter

from downloader.core import DownloadAttempt, FetchJob, commit_part, discard_part, part_path
from utils.common import format_bytes
from utils.config import CDN_REFERERS, DEFAULT_CDN_REFERER

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 10; K) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/143.0.0.0 Mobile Safari/537.36"
)

HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
    "Accept-Language": "zh-TW,zh;q=0.9,en-US;q=0.8,en;q=0.7",
    "Accept-Encoding": "identity",
    "Connection": "keep-alive",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-CH-UA": '"Google Chrome";v="143", "Chromium";v="143", "Not A(Brand";v="24"',
    "Sec-CH-UA-Mobile": "?1",
    "Sec-CH-UA-Platform": '"Android"',
    "Sec-Fetch-Mode": "no-cors",
    "Sec-Fetch-Site": "same-site",
    "Range": "bytes=0-",
}


@dataclass(frozen=True)
class Strategy:
    name: str
    referer: str
    cookie: str = ""


def cdn_referer(file_url: str) -> str:
    """Pick the referer the serving CDN validates against."""
    host = (urlparse(file_url).hostname or "").lower()
    for domain, referer in CDN_REFERERS.items():
        if host == domain or host.endswith("." + domain):
            return referer
    return DEFAULT_CDN_REFERER


def build_strategies(file_url: str, page_url: str = "", cookies: str = "") -> list[Strategy]:
    referer = cdn_referer(file_url)
    strategies: list[Strategy] = []
    if cookies:
        strategies.append(Strategy("cookie+referer", referer, cookies))
    strategies.append(Strategy("referer-only", referer))
    if page_url:
        strategies.append(Strategy("pageUrl-referer", page_url))
    return strategies


def build_headers(strategy: Strategy, media_type: str = "video") -> dict[str, str]:
    headers = dict(HEADERS)
    headers["Sec-Fetch-Dest"] = "image" if media_type == "image" else "video"
    if strategy.referer:
        headers["Referer"] = strategy.referer
    if strategy.cookie:
        headers["Cookie"] = strategy.cookie
    return headers


def _get_chunk_size(total_size: int) -> int:
    """Stream in larger chunks for larger files."""
    if total_size <= 0:
        return 65536
    if total_size < 5 * 1024 * 1024:
        return 16384
    if total_size < 100 * 1024 * 1024:
        return 65536
    return 262144


def _is_error_page(response: requests.Response) -> bool:
    """True when a 2xx response is really an HTML hotlink/error page."""
    content_type = response.headers.get("content-type", "").lower()
    return content_type.startswith("text/html")


class DirectDownloader:
    """Stateless strategy-ordered HTTP downloader.

    The session is created lazily and has urllib3 retries disabled: retrying
    happens a layer up (operator-triggered batch retry), so every attempt
    here stays one request.
    """

    name = "direct"

    def __init__(self, timeout: float = 60.0, session: requests.Session | None = None) -> None:
        self.timeout = timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            adapter = HTTPAdapter(pool_connections=10, pool_maxsize=20, max_retries=0)
            self._session.mount("https://", adapter)
            self._session.mount("http://", adapter)
        return self._session

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
        self._session = None

    def _try_strategy(self, url: str, dest: Path, strategy: Strategy,
                      media_type: str) -> DownloadAttempt:
        headers = build_headers(strategy, media_type)
        logger.info("direct fetch %s (strategy: %s)", url, strategy.name)
        try:
            with self.session.get(url, headers=headers, timeout=self.timeout,
                                  stream=True) as resp:
                if not 200 <= resp.status_code < 300:
                    return DownloadAttempt(self.name, False, strategy.name,
                                           error=f"HTTP {resp.status_code}")
                if _is_error_page(resp):
                    return DownloadAttempt(self.name, False, strategy.name,
                                           error="HTML error page")
                total = int(resp.headers.get("content-length") or 0)
                dest.parent.mkdir(parents=True, exist_ok=True)
                with open(part_path(dest), "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=_get_chunk_size(total)):
                        if chunk:
                            fh.write(chunk)
            size = commit_part(dest)
        except (requests.RequestException, OSError) as exc:
            discard_part(dest)
            return DownloadAttempt(self.name, False, strategy.name, error=str(exc))
        return DownloadAttempt(self.name, True, strategy.name, size=size)

    def download_attempts(self, url: str, dest: Path, page_url: str = "",
                          cookies: str = "", media_type: str = "video") -> list[DownloadAttempt]:
        """Run strategies in order until one succeeds; return every attempt."""
        dest = Path(dest)
        attempts: list[DownloadAttempt] = []
        for strategy in build_strategies(url, page_url, cookies):
            attempt = self._try_strategy(url, dest, strategy, media_type)
            attempts.append(attempt)
            if attempt.ok:
                logger.info("direct fetch ok (strategy: %s) %s [%s]",
                            strategy.name, dest.name, format_bytes(attempt.size))
                return attempts
            logger.info("strategy %s failed: %s", strategy.name, attempt.error)
        logger.warning("direct fetch failed for %s (all %d strategies)", url, len(attempts))
        return attempts

    def download(self, url: str, dest: Path, page_url: str = "", cookies: str = "",
                 media_type: str = "video") -> bool:
        attempts = self.download_attempts(url, dest, page_url, cookies, media_type)
        return bool(attempts) and attempts[-1].ok

    def download_job(self, job: FetchJob) -> DownloadAttempt:
        attempts = self.download_attempts(job.file_url, job.dest, job.page_url,
                                          job.cookies, job.media_type)
        return attempts[-1]

    async def fetch(self, job: FetchJob) -> DownloadAttempt:
        return await asyncio.to_thread(self.download_job, job)
