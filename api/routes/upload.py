"""
Fallback upload endpoint.

When the backend cannot fetch a file itself, the userscript uploads the blob
it already holds: one raw body, or indexed chunks announced through
``X-Chunk-Index`` / ``X-Total-Chunks``.
"""

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool

from api.deps import ArchiveContext, get_context
from api.models import UploadResponse

router = APIRouter(prefix="/api", tags=["upload"])


@router.post(
    "/upload",
    response_model=UploadResponse,
    response_model_exclude_none=True,
    summary="Upload a record's binary",
    description="Raw request body.  Without chunk headers the body is the whole file; "
                "with them, chunks are stored until all have arrived and then assembled "
                "in index order.",
)
async def upload(
    request: Request,
    x_record_id: str | None = Header(None),
    x_chunk_index: str | None = Header(None),
    x_total_chunks: str | None = Header(None),
    ctx: ArchiveContext = Depends(get_context),
) -> dict:
    payload = await request.body()
    result = await run_in_threadpool(
        ctx.assembler.save_for_id, x_record_id or "", payload, x_chunk_index, x_total_chunks,
    )
    return result.to_dict()
