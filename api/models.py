"""
Pydantic request/response models for the archive API.

Wire names are the camelCase keys the userscript and admin pages send
(``pageUrl``, ``fileUrl`` ...); attributes are snake_case with aliases.
Optional response fields are omitted rather than sent as null.
"""

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Capture ───────────────────────────────────────────────────────────────────

class CaptureRequest(_CamelModel):
    """Metadata reported by the userscript for one share page.

    Required fields are checked by the capture service so that a missing
    field comes back as ``invalid_input`` like every other input error.
    """
    title: str | None = Field(None, description="Page title", examples=["cat video"])
    page_url: str | None = Field(None, alias="pageUrl", description="Share page URL",
                                 examples=["https://lurl.cc/AbC123"])
    file_url: str | None = Field(None, alias="fileUrl", description="Signed CDN URL of the binary",
                                 examples=["https://cdn.lurl.cc/v/abc.mp4?e=1700000000"])
    type: str | None = Field("video", description="video | image", examples=["video"])
    ref: str | None = Field(None, description="Referring page, if any")
    cookies: str | None = Field(None, description="document.cookie of the share page")


class CaptureResponse(_CamelModel):
    ok: bool = Field(..., examples=[True])
    id: str | None = Field(None, description="Record id", examples=["lq3z8k2a"])
    duplicate: bool | None = Field(None, description="pageUrl was already captured")
    need_upload: bool | None = Field(None, alias="needUpload",
                                     description="File still absent; the producer should upload it")
    blocked: bool | None = Field(None, description="Page is blocked; nothing was scheduled")


# ── Upload ────────────────────────────────────────────────────────────────────

class UploadResponse(_CamelModel):
    ok: bool = Field(..., examples=[True])
    size: int | None = Field(None, description="Bytes written (single-shot or final chunk)")
    chunk: int | None = Field(None, description="Index of the chunk just stored", examples=[0])
    total: int | None = Field(None, description="Declared chunk total", examples=[4])
    complete: bool | None = Field(None, description="All chunks received and assembled")


# ── Recovery / quota ──────────────────────────────────────────────────────────

class RecoverRequest(_CamelModel):
    page_url: str | None = Field(None, alias="pageUrl", description="Expired share page URL",
                                 examples=["https://lurl.cc/AbC123"])


class QuotaBalance(_CamelModel):
    remaining: int = Field(..., examples=[2])
    total: int = Field(..., examples=[3])


class RecoverResponse(_CamelModel):
    ok: bool = Field(..., examples=[True])
    backup_url: str = Field(..., alias="backupUrl", examples=["/files/videos/cat_video_lq3z8k2a.mp4"])
    already_recovered: bool = Field(..., alias="alreadyRecovered")
    quota: QuotaBalance


class HistoryItem(_CamelModel):
    slug: str = Field(..., examples=["abc123"])
    backup_url: str = Field(..., alias="backupUrl")
    used_at: str = Field(..., alias="usedAt", examples=["2026-01-01T00:00:00Z"])


class QuotaStatus(_CamelModel):
    visitor_id: str = Field(..., alias="visitorId")
    used_count: int = Field(..., alias="usedCount")
    free_quota: int = Field(..., alias="freeQuota")
    paid_quota: int = Field(..., alias="paidQuota")
    remaining: int
    total: int
    history: list[HistoryItem] = Field(default_factory=list)


class QuotaGrantRequest(_CamelModel):
    visitor_id: str = Field(..., alias="visitorId", min_length=1)
    amount: int = Field(..., description="Paid recoveries to add", examples=[5])


# ── Records (admin) ───────────────────────────────────────────────────────────

class RecordOut(_CamelModel):
    id: str
    title: str
    page_url: str = Field(..., alias="pageUrl")
    file_url: str = Field(..., alias="fileUrl")
    type: str = Field(..., examples=["video"])
    source: str = Field("lurl")
    captured_at: str = Field("", alias="capturedAt")
    backup_path: str = Field("", alias="backupPath")
    thumbnail_path: str | None = Field(None, alias="thumbnailPath")
    ref: str | None = None
    blocked: bool = False
    like_count: int = Field(0, alias="likeCount")
    dislike_count: int = Field(0, alias="dislikeCount")
    file_exists: bool = Field(..., alias="fileExists",
                              description="Backing file present on disk right now")


class RecordList(_CamelModel):
    records: list[RecordOut]
    total: int


class TopUrl(_CamelModel):
    page_url: str = Field(..., alias="pageUrl")
    count: int = Field(..., examples=[3])


class StatsOut(_CamelModel):
    total: int
    videos: int
    images: int
    missing: int = Field(..., description="Non-blocked records without a backing file")
    blocked: int
    top_urls: list[TopUrl] = Field(default_factory=list, alias="topUrls",
                                   description="Most-captured share pages, at most ten")


class BlockRequest(_CamelModel):
    blocked: bool = True


class VoteRequest(_CamelModel):
    vote: str = Field(..., description="like | dislike", examples=["like"])


class VoteResponse(_CamelModel):
    ok: bool
    like_count: int = Field(..., alias="likeCount")
    dislike_count: int = Field(..., alias="dislikeCount")


class ThumbnailRequest(_CamelModel):
    thumbnail_path: str | None = Field(None, alias="thumbnailPath",
                                       examples=["thumbnails/lq3z8k2a.jpg"])


# ── Retry ─────────────────────────────────────────────────────────────────────

class AttemptOut(_CamelModel):
    downloader: str = Field(..., examples=["direct"])
    ok: bool
    strategy: str | None = Field(None, examples=["referer-only"])
    size: int | None = None
    error: str | None = None


class RetryResponse(_CamelModel):
    ok: bool
    strategy: str | None = Field(None, description="downloader/strategy that succeeded",
                                 examples=["browser/page-fetch"])
    attempts: list[AttemptOut]


class BatchRetryResponse(_CamelModel):
    success_count: int = Field(..., alias="successCount")
    success_ids: list[str] = Field(..., alias="successIds")
    total: int
    cancelled: bool = False
