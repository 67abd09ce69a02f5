"""
Capture ingestion endpoint.

The userscript posts here for every share page it renders.  The response is
immediate; the direct download runs afterwards as a background task.
"""

from fastapi import APIRouter, BackgroundTasks, Depends

from api.deps import ArchiveContext, get_context
from api.models import CaptureRequest, CaptureResponse
from services.capture import download_in_background

router = APIRouter(tags=["capture"])


@router.post(
    "/capture",
    response_model=CaptureResponse,
    response_model_exclude_none=True,
    summary="Report a share page",
    description="Record page metadata and schedule a direct download of the file. "
                "Duplicates key on pageUrl; a duplicate whose file is still missing has "
                "its fileUrl rotated and is downloaded again.",
)
def capture(
    body: CaptureRequest,
    background_tasks: BackgroundTasks,
    ctx: ArchiveContext = Depends(get_context),
) -> dict:
    outcome = ctx.capture.capture(
        body.title, body.page_url, body.file_url,
        record_type=body.type, ref=body.ref, cookies=body.cookies,
    )
    if outcome.job is not None:
        background_tasks.add_task(download_in_background, ctx.direct, outcome.job)
    return outcome.body
