"""Common utility functions used across the archive backend."""

import re
import time
from datetime import datetime, timezone
from urllib.parse import urlparse

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

_RESERVED_CHARS = re.compile(r'[/\\:*?"<>|]')
_WHITESPACE = re.compile(r"\s+")
_EMOJI = re.compile(r"[\U0001F000-\U0001FFFF\u2600-\u27bf\ufe00-\ufe0f]")
# ASCII word chars, CJK unified ideographs (+ extension A), dot and dash
_DISALLOWED = re.compile(r"[^A-Za-z0-9_\u4e00-\u9fff\u3400-\u4dbf.\-]")
_UNDERSCORES = re.compile(r"_+")

MAX_FILENAME_STEM = 200


def format_bytes(b: int) -> str:
    """Format bytes into human-readable size string.

    Examples:
        512 KB, 1.5 MB, 2.34 GB
    """
    if b < 1024 * 1024:
        return f"{b / 1024:.0f} KB"
    if b < 1024 * 1024 * 1024:
        return f"{b / (1024 * 1024):.1f} MB"
    return f"{b / (1024 * 1024 * 1024):.2f} GB"


def elapsed(start_time: float) -> str:
    """Format elapsed time from start_time to now as human-readable string.

    Examples:
        0m 30s, 2m 15s, 1h 05m 30s
    """
    secs = int(time.time() - start_time)
    m, s = divmod(secs, 60)
    h, m = divmod(m, 60)
    if h:
        return f"{h}h {m:02d}m {s:02d}s"
    return f"{m}m {s:02d}s"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def to_base36(n: int) -> str:
    if n < 0:
        raise ValueError("negative values have no base36 id")
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_record_id(now_ms: int | None = None) -> str:
    """Return a time-derived record id (epoch milliseconds in base 36)."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return to_base36(now_ms)


def sanitize_filename(name: str) -> str:
    """Reduce a page title to a filesystem-safe filename stem.

    Reserved path characters and whitespace become underscores, emoji and
    other symbols are dropped, runs of underscores collapse, and the result
    is capped at 200 characters.  An empty result falls back to "untitled".
    """
    name = _RESERVED_CHARS.sub("_", name)
    name = _WHITESPACE.sub("_", name)
    name = _EMOJI.sub("", name)
    name = _DISALLOWED.sub("", name)
    name = _UNDERSCORES.sub("_", name).strip("_")
    return name[:MAX_FILENAME_STEM] or "untitled"


def slugify_share_url(url: str) -> str:
    """Return the join key for a share URL: its case-folded last path segment.

    Query string and fragment are ignored, so ``https://lurl.cc/AbCdE?x=1``
    and ``lurl.cc/abcde/`` both give ``"abcde"``.  A URL without any path
    segment returns ``""``, which callers treat as "matches nothing".
    """
    if not url:
        return ""
    url = url.strip()
    parsed = urlparse(url if "://" in url else f"//{url}")
    segments = [seg for seg in parsed.path.split("/") if seg]
    if not segments:
        return ""
    return segments[-1].casefold()
