"""
FastAPI application factory.

Usage:
    python -m api.app                          # Dev server on port 8000
    ARCHIVE_DATA_DIR=/srv/archive python -m api.app

OpenAPI docs available at http://localhost:8000/docs after starting.

The userscript talks to /capture and /api/upload cross-origin from the share
site, so CORS is open by default and lists the custom upload / visitor
headers explicitly.  Archived files are served read-only under /files.
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from api.deps import ArchiveContext
from api.routes import capture, records, recovery, retry, upload
from utils.common import utc_now_iso
from utils.config import TYPE_FOLDERS, AppConfig
from utils.errors import ArchiveError

# ── Configuration ─────────────────────────────────────────────────────────────
_cfg = AppConfig.from_env()

# ── Structured JSON logging ──────────────────────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as newline-delimited JSON."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Merge extra fields added via logger.info("...", extra={...})
        for key in ("method", "path", "status", "duration_ms", "request_id",
                    "record_id", "strategy"):
            if hasattr(record, key):
                data[key] = getattr(record, key)
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False)


_logger = logging.getLogger("archive_api")
_handler = logging.StreamHandler()
if _cfg.log_format == "json":
    _handler.setFormatter(_JsonFormatter())
else:
    _handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
logging.basicConfig(handlers=[_handler], level=_cfg.log_level, force=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the media folders on startup; close the browser and HTTP pool on shutdown."""
    ctx: ArchiveContext = app.state.archive
    ctx.store.ensure_dirs()
    _logger.info("archive data dir: %s", ctx.config.data_dir.resolve())
    yield
    await ctx.browser_handle.release()
    ctx.direct.close()


def create_app(config: AppConfig | None = None,
               context: ArchiveContext | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Override the environment-derived settings (useful for testing).
        context: Prebuilt dependencies, e.g. with fake downloaders.

    Returns:
        Configured FastAPI application instance.
    """
    if context is None:
        context = ArchiveContext.build(config or _cfg)
    cfg = context.config

    app = FastAPI(
        title="Link Archive API",
        summary="Capture, archive and recover media from expiring share links.",
        description=(
            "## Link Archive API\n\n"
            "Backend for a userscript that reports share pages before their links "
            "expire.  Each capture is recorded and the file is pulled through a "
            "chain of acquisition strategies:\n\n"
            "1. **Direct fetch** with browser-like headers and CDN-specific referers.\n"
            "2. **Browser bypass**: the file is fetched from inside the share page.\n"
            "3. **Upload**: the userscript pushes the blob it already holds.\n\n"
            "Visitors with an expired link can recover an archived copy against a "
            "per-visitor quota."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "capture", "description": "Userscript capture ingestion."},
            {"name": "upload", "description": "Single-shot and chunked fallback upload."},
            {"name": "recovery", "description": "Quota-gated recovery for visitors."},
            {"name": "records", "description": "Admin listing, stats and moderation."},
            {"name": "retry", "description": "Operator-triggered re-acquisition."},
            {"name": "meta", "description": "Health check."},
        ],
    )
    app.state.archive = context

    # ── CORS middleware ───────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Record-Id", "X-Chunk-Index",
                       "X-Total-Chunks", "X-Visitor-Id"],
    )

    # ── Request logging middleware ────────────────────────────────────────────

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log each request and tag the response with a request id."""
        request_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        path = request.url.path

        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        if cfg.log_format == "json":
            _logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": path,
                    "status": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                    "request_id": request_id,
                },
            )
        else:
            _logger.info(
                "method=%s path=%s status=%d duration_ms=%.1f rid=%s",
                request.method, path, response.status_code, duration_ms, request_id,
            )
        return response

    # ── Error handling ────────────────────────────────────────────────────────

    @app.exception_handler(ArchiveError)
    async def archive_error_handler(request: Request, exc: ArchiveError):
        """Known failures carry a machine-readable kind for the caller."""
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch unhandled exceptions and return JSON instead of HTML traceback."""
        _logger.exception("unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "error": "internal", "message": str(exc)},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": "invalid_input", "message": str(exc)},
        )

    # ── Health check ──────────────────────────────────────────────────────────

    @app.get("/health", tags=["meta"], summary="Health check")
    def health():
        """Return 200 OK with the current record count."""
        return {
            "status": "ok",
            "records": len(context.store.read_all()),
            "timestamp": utc_now_iso(),
        }

    # ── Register routers ──────────────────────────────────────────────────────

    app.include_router(capture.router)
    app.include_router(upload.router)
    app.include_router(recovery.router)
    app.include_router(records.router)
    app.include_router(retry.router)

    # ── Archived files ────────────────────────────────────────────────────────
    # Only the media folders are exposed; the JSONL logs stay private.
    for folder in TYPE_FOLDERS.values():
        app.mount(
            f"{cfg.files_prefix}/{folder}",
            StaticFiles(directory=str(cfg.data_dir / folder), check_dir=False),
            name=f"files-{folder}",
        )

    return app


# Singleton instance for uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.app:app",
        host=_cfg.api_host,
        port=_cfg.api_port,
        reload=True,
        log_level="info",
    )
