#!/usr/bin/env python3
"""
Retry every archived record whose file is still missing, through the
browser bypass.

Usage:
    python scripts/retry_missing.py [--data-dir DIR] [--concurrency N] \\
        [--limit N] [--headful]

Ctrl-C stops the batch after the group currently in flight.

Exit codes:
    0: every missing record was recovered (or nothing was missing)
    1: one or more records failed, or the batch was interrupted
"""

import argparse
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

# Ensure the project root is on sys.path so we can import the packages
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from downloader.browser import BrowserContextDownloader, BrowserHandle, BypassEngine, Launcher  # noqa: E402
from downloader.core import DownloadAttempt  # noqa: E402
from store.records import Record, RecordStore  # noqa: E402
from utils.common import elapsed, format_bytes  # noqa: E402
from utils.config import AppConfig  # noqa: E402


def _print_progress(completed: int, total: int, record: Record, attempt: DownloadAttempt) -> None:
    if attempt.ok:
        status = f"OK   {format_bytes(attempt.size)}"
    else:
        status = f"FAIL {attempt.error}"
    print(f"  [{completed}/{total}] {record.id}  {status}  {record.title[:60]}")


async def run_retry(
    data_dir: Path,
    concurrency: int = 4,
    limit: int | None = None,
    headless: bool = True,
    launcher: Launcher | None = None,
    cfg: AppConfig | None = None,
) -> int:
    """Run one bypass batch over the missing records of *data_dir*.

    Returns:
        0 if every record succeeded, 1 otherwise.
    """
    cfg = cfg or AppConfig.from_env()
    store = RecordStore(data_dir)
    records = store.missing_records()
    if limit is not None:
        records = records[:limit]
    if not records:
        print("Nothing to retry: every record has its file.")
        return 0

    handle = BrowserHandle(headless=headless, launcher=launcher)
    downloader = BrowserContextDownloader(
        handle,
        nav_timeout_ms=cfg.nav_timeout_ms,
        challenge_timeout_ms=cfg.challenge_timeout_ms,
        min_bytes=cfg.min_payload_bytes,
    )
    engine = BypassEngine(handle, downloader, store, group_size=concurrency)

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    sigint_handled = False
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        sigint_handled = True
    except NotImplementedError:
        print("Ctrl-C will abort without finishing the current group.", file=sys.stderr)

    print(f"Retrying {len(records)} records from {data_dir} "
          f"({concurrency} pages per group)")
    start = time.time()
    try:
        result = await engine.batch_retry(records, on_progress=_print_progress,
                                          cancel_event=cancel_event)
    finally:
        if sigint_handled:
            loop.remove_signal_handler(signal.SIGINT)

    print()
    print(f"Recovered {result.success_count}/{result.total} in {elapsed(start)}")
    if result.cancelled:
        print(f"Interrupted after {result.processed} records.")
    return 0 if result.success_count == result.total else 1


def main(argv: list[str] | None = None) -> None:
    cfg = AppConfig.from_env()
    parser = argparse.ArgumentParser(
        description="Retry missing archive files through the browser bypass.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--data-dir", type=Path, default=cfg.data_dir,
        help=f"Archive data directory (default: {cfg.data_dir})",
    )
    parser.add_argument(
        "--concurrency", type=int, default=cfg.bypass_concurrency,
        help="Pages fetched together per group (default: %(default)s)",
    )
    parser.add_argument(
        "--limit", type=int, default=None,
        help="Retry at most this many records",
    )
    parser.add_argument(
        "--headful", action="store_true",
        help="Show the browser window (useful when a challenge needs a human)",
    )
    args = parser.parse_args(argv)
    if args.concurrency < 1:
        parser.error("--concurrency must be at least 1")

    logging.basicConfig(level=cfg.log_level,
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")
    sys.exit(asyncio.run(run_retry(
        args.data_dir, args.concurrency, args.limit,
        headless=not args.headful, cfg=cfg,
    )))


if __name__ == "__main__":
    main()
