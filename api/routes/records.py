"""
Admin record endpoints: listing, stats, moderation and votes.
"""

from collections import Counter

from fastapi import APIRouter, Depends, Query

from api.deps import ArchiveContext, get_context
from api.models import (
    BlockRequest,
    RecordList,
    StatsOut,
    ThumbnailRequest,
    VoteRequest,
    VoteResponse,
)
from store.records import Record, RecordStore

router = APIRouter(prefix="/api", tags=["records"])

TOP_URLS = 10


def _record_out(store: RecordStore, record: Record) -> dict:
    body = record.to_dict()
    body["fileExists"] = store.file_exists(record)
    return body


@router.get(
    "/records",
    response_model=RecordList,
    response_model_exclude_none=True,
    summary="List records",
    description="Newest first.  fileExists is recomputed from disk on every call.",
)
def list_records(
    type: str | None = Query(None, description="video | image"),
    q: str | None = Query(None, description="Case-insensitive match on title, id or pageUrl"),
    ctx: ArchiveContext = Depends(get_context),
) -> dict:
    records = list(reversed(ctx.store.read_all()))
    if type:
        records = [r for r in records if r.type == type]
    if q:
        needle = q.casefold()
        records = [r for r in records
                   if needle in r.title.casefold() or needle in r.id.casefold()
                   or needle in r.page_url.casefold()]
    return {
        "records": [_record_out(ctx.store, r) for r in records],
        "total": len(records),
    }


@router.get("/stats", response_model=StatsOut, summary="Archive counts")
def stats(ctx: ArchiveContext = Depends(get_context)) -> dict:
    records = ctx.store.read_all()
    return {
        "total": len(records),
        "videos": sum(1 for r in records if r.type == "video"),
        "images": sum(1 for r in records if r.type == "image"),
        "missing": sum(1 for r in records if not r.blocked and not ctx.store.file_exists(r)),
        "blocked": sum(1 for r in records if r.blocked),
        "topUrls": [{"pageUrl": url, "count": count}
                    for url, count in Counter(r.page_url for r in records).most_common(TOP_URLS)],
    }


@router.delete("/records/{record_id}", summary="Delete a record and its file")
def delete_record(record_id: str, ctx: ArchiveContext = Depends(get_context)) -> dict:
    ctx.store.delete(record_id)
    return {"ok": True}


@router.post("/records/{record_id}/block", summary="Block or unblock a record")
def block_record(record_id: str, body: BlockRequest,
                 ctx: ArchiveContext = Depends(get_context)) -> dict:
    record = ctx.store.set_blocked(record_id, body.blocked)
    return {"ok": True, "blocked": record.blocked}


@router.post("/records/{record_id}/vote", response_model=VoteResponse, summary="Like or dislike")
def vote(record_id: str, body: VoteRequest,
         ctx: ArchiveContext = Depends(get_context)) -> dict:
    record = ctx.store.vote(record_id, body.vote)
    return {"ok": True, "likeCount": record.like_count, "dislikeCount": record.dislike_count}


@router.post("/records/{record_id}/thumbnail", summary="Attach a thumbnail path")
def set_thumbnail(record_id: str, body: ThumbnailRequest,
                  ctx: ArchiveContext = Depends(get_context)) -> dict:
    ctx.store.update_thumbnail(record_id, body.thumbnail_path)
    return {"ok": True}
