"""
Operator retry endpoints.

``/api/retry/{id}`` walks the full fallback chain (direct, then browser) for
one record.  ``/api/retry-failed`` runs the browser bypass over every
non-blocked record whose file is missing.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from api.deps import ArchiveContext, get_context
from api.models import BatchRetryResponse, RetryResponse
from downloader.core import DownloadAttempt, FetchJob
from store.records import Record
from utils.errors import InvalidInputError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["retry"])


def _log_progress(completed: int, total: int, record: Record, attempt: DownloadAttempt) -> None:
    status = "ok" if attempt.ok else f"failed ({attempt.error})"
    logger.info("[%d/%d] %s %s", completed, total, record.id, status,
                extra={"record_id": record.id})


@router.post(
    "/retry/{record_id}",
    response_model=RetryResponse,
    response_model_exclude_none=True,
    summary="Retry one record",
    description="Try the direct downloader, then the browser bypass.  Returns every "
                "attempt made; the browser is closed again afterwards.",
)
async def retry_one(record_id: str, ctx: ArchiveContext = Depends(get_context)) -> dict:
    record = await run_in_threadpool(ctx.store.require, record_id)
    if record.blocked:
        raise InvalidInputError(f"record {record_id} is blocked", id=record_id)
    job = FetchJob.for_record(record, ctx.store.file_path(record))
    async with ctx.browser_handle.lease():
        result = await ctx.chain.fetch(job)
    body: dict = {"ok": result.ok, "attempts": [a.to_dict() for a in result.attempts]}
    winner = result.winner
    if winner is not None:
        body["strategy"] = f"{winner.downloader}/{winner.strategy}"
    return body


@router.post(
    "/retry-failed",
    response_model=BatchRetryResponse,
    summary="Bypass-retry every missing record",
    description="Runs in groups of BYPASS_CONCURRENCY pages; returns when the batch ends.",
)
async def retry_failed(ctx: ArchiveContext = Depends(get_context)) -> dict:
    records = await run_in_threadpool(ctx.store.missing_records)
    result = await ctx.bypass.batch_retry(records, on_progress=_log_progress)
    return result.to_dict()
