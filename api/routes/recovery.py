"""
Recovery endpoints for anonymous visitors.

Visitors are identified only by the ``X-Visitor-Id`` header their browser
generates.  Each successful recovery of a new slug costs one unit of quota.
"""

from fastapi import APIRouter, Depends, Header

from api.deps import ArchiveContext, get_context
from api.models import QuotaGrantRequest, QuotaStatus, RecoverRequest, RecoverResponse

router = APIRouter(prefix="/api", tags=["recovery"])


@router.post(
    "/recover",
    response_model=RecoverResponse,
    responses={
        402: {"description": "quota_exhausted; body carries the quota snapshot"},
        404: {"description": "No backup exists for this page"},
    },
    summary="Recover an expired share",
    description="Match the page by slug against archived records and return the backup URL. "
                "Replaying a slug the visitor already recovered is free.",
)
def recover(
    body: RecoverRequest,
    x_visitor_id: str | None = Header(None),
    ctx: ArchiveContext = Depends(get_context),
) -> dict:
    return ctx.recovery.recover(x_visitor_id, body.page_url)


@router.get(
    "/quota",
    response_model=QuotaStatus,
    summary="Visitor quota status",
)
def quota(
    x_visitor_id: str | None = Header(None),
    ctx: ArchiveContext = Depends(get_context),
) -> dict:
    return ctx.recovery.quota_status(x_visitor_id)


@router.post(
    "/quota/grant",
    response_model=QuotaStatus,
    summary="Add paid recoveries",
    description="Called by the payment collaborator once a purchase clears.",
)
def grant(
    body: QuotaGrantRequest,
    ctx: ArchiveContext = Depends(get_context),
) -> dict:
    return ctx.ledger.grant_paid(body.visitor_id, body.amount).status()
