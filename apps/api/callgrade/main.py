"""FastAPI application for the call processing pipeline."""
from __future__ import annotations

import base64
import logging
import os
import warnings
from contextlib import asynccontextmanager
from typing import AsyncIterator

warnings.filterwarnings(
    "ignore",
    message="pkg_resources is deprecated as an API",
    category=UserWarning,
    module="ctranslate2",
)

os.environ.setdefault("GRPC_VERBOSITY", "ERROR")
os.environ.setdefault("GRPC_TRACE", "")

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from .core.config import settings
from .core.errors import (
    CallNotFoundError,
    DuplicateCallError,
    InvalidTransitionError,
    ParseError,
    PipelineError,
    TranscriptionError,
)
from .db.session import dispose_engine
from .routers import calls, crm, webhooks
from .services.pipeline import transcription_tasks
from .services.scoring_queue import scoring_queue

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    try:
        await scoring_queue.resume_pending()
    except Exception:  # noqa: BLE001 - the API still serves status without the queue
        logger.exception("Could not resume pending scoring jobs")
    yield
    await transcription_tasks.shutdown()
    await scoring_queue.shutdown()
    await dispose_engine()


app = FastAPI(title="Call Grading API", version="0.1.0", lifespan=lifespan)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(calls.router, prefix="/api/calls", tags=["calls"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
app.include_router(crm.router, prefix="/api/crm", tags=["crm"])


@app.exception_handler(ParseError)
async def parse_error_handler(_: Request, exc: ParseError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "hint": "Upload a different file or check the export format."},
    )


@app.exception_handler(DuplicateCallError)
async def duplicate_error_handler(_: Request, exc: DuplicateCallError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "existing_call_id": exc.existing_call_id, "is_duplicate": True},
    )


@app.exception_handler(InvalidTransitionError)
async def transition_error_handler(_: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(CallNotFoundError)
async def not_found_handler(_: Request, exc: CallNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(TranscriptionError)
async def transcription_error_handler(_: Request, exc: TranscriptionError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(PipelineError)
async def pipeline_error_handler(_: Request, exc: PipelineError) -> JSONResponse:
    logger.error("Unhandled pipeline error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


FAVICON_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR4nGMAAQAABQABDQottAAAAABJRU5ErkJggg=="
)


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Simple liveness probe."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)


@app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
async def robots() -> PlainTextResponse:
    return PlainTextResponse("User-agent: *\nDisallow: /")


@app.get("/favicon.ico", include_in_schema=False)
async def favicon() -> Response:
    return Response(content=FAVICON_BYTES, media_type="image/png")
