"""FastAPI entry point exposing the image generation REST API."""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .config import Settings, get_settings
from .errors import (
    ImageGenError,
    InferenceError,
    InvalidInputError,
    LocalRateLimitedError,
    ModelLoadingError,
    NotConfiguredError,
    UpstreamRateLimitedError,
)
from .schemas import (
    DeleteResponse,
    ErrorResponse,
    GenerateRequest,
    GenerateResponse,
    HistoryListResponse,
    HistoryRecord,
    HistoryRecordRequest,
    HistoryRecordResponse,
)
from .service import ImageGenerationService, get_image_generation_service
from .storageservice.storageservice import StorageService, get_database_service

logger = logging.getLogger(__name__)

FORWARDED_FOR_HEADER = "x-forwarded-for"

LOCAL_RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait 1 minute before trying again."
UPSTREAM_RATE_LIMIT_MESSAGE = "Too many requests. Please wait a minute and try again."
GENERATION_FAILED_MESSAGE = "Failed to generate image. Please try again."
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again."


def get_caller_identity(request: Request) -> Optional[str]:
    """Rate limit identity: the first address in ``X-Forwarded-For``, if any."""
    forwarded = request.headers.get(FORWARDED_FOR_HEADER, "")
    first = forwarded.split(",")[0].strip()
    return first or None


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    body = ErrorResponse(error=message, **extra).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=body)


def error_response(exc: ImageGenError) -> JSONResponse:
    """Map a pipeline failure onto the caller-facing status and message."""
    if isinstance(exc, InvalidInputError):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    if isinstance(exc, LocalRateLimitedError):
        response = _error(status.HTTP_429_TOO_MANY_REQUESTS, LOCAL_RATE_LIMIT_MESSAGE)
        response.headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
        return response

    if isinstance(exc, NotConfiguredError):
        logger.error("Generation refused: %s", exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    if isinstance(exc, ModelLoadingError):
        # The hint is a floor for the caller, not an upstream estimate.
        wait = exc.retry_after
        if wait is None:
            wait = get_settings().model_loading_wait_seconds
        logger.warning("Model still loading after retries: %s", exc)
        response = _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            f"Model is loading. Please try again in {wait} seconds.",
            estimated_time=wait,
        )
        response.headers["Retry-After"] = str(wait)
        return response

    if isinstance(exc, UpstreamRateLimitedError):
        logger.warning("Inference API rate limited the request: %s", exc)
        return _error(status.HTTP_429_TOO_MANY_REQUESTS, UPSTREAM_RATE_LIMIT_MESSAGE)

    if isinstance(exc, InferenceError):
        logger.error("Error generating image: %s", exc)
    else:
        logger.error("Unhandled generation failure: %r", exc)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, GENERATION_FAILED_MESSAGE)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the generation service once per application and close its HTTP client on shutdown."""
    app.state.image_generation_service = ImageGenerationService(get_settings())
    logger.info("Image generation service initialised.")

    yield

    await app.state.image_generation_service.aclose()
    logger.info("Inference client closed on shutdown.")


app = FastAPI(title="Image Generator Backend", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ImageGenError)
async def handle_generation_error(request: Request, exc: ImageGenError) -> JSONResponse:
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    if request.url.path != "/generate":
        return await request_validation_exception_handler(request, exc)
    return _error(status.HTTP_400_BAD_REQUEST, "Invalid request body")


@app.get("/health", summary="Health Check Endpoint")
async def healthcheck(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "primaryModel": settings.primary_model_id,
        "alternateModel": settings.alternate_model_id,
        "configured": bool(settings.inference_api_key.get_secret_value()),
    }


@app.post(
    "/generate",
    response_model=GenerateResponse,
    responses={
        400: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    summary="Generate an image from a text prompt",
)
async def generate(
    payload: GenerateRequest,
    request: Request,
    service: ImageGenerationService = Depends(get_image_generation_service),
):
    try:
        output = await service.generate_image(payload.prompt, payload.model, get_caller_identity(request))
    except ImageGenError:
        raise
    except Exception:
        logger.exception("Error in generate route")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, UNEXPECTED_ERROR_MESSAGE)
    return GenerateResponse(output=output)


@app.post(
    "/history",
    response_model=HistoryRecordResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a generated image in the owner's history",
)
async def add_history_record(
    payload: HistoryRecordRequest,
    service: StorageService = Depends(get_database_service),
):
    record_id = await run_in_threadpool(
        service.add_history_record,
        payload.owner_id,
        payload.image_url,
        payload.prompt,
        payload.model,
    )
    return HistoryRecordResponse(id=record_id)


@app.get(
    "/users/{owner_id}/history",
    response_model=HistoryListResponse,
    summary="List an owner's generated images, newest first",
)
async def list_history(
    owner_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    service: StorageService = Depends(get_database_service),
):
    rows = await run_in_threadpool(service.list_history, owner_id, limit)
    records: List[HistoryRecord] = [
        HistoryRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            image_url=row["image_url"],
            prompt=row["prompt"],
            model=row["model"],
            created_at=row["created_at"],
        )
        for row in rows
    ]
    return HistoryListResponse(records=records)


@app.delete(
    "/history/{record_id}",
    response_model=DeleteResponse,
    summary="Delete a history record",
)
async def delete_history_record(
    record_id: int,
    service: StorageService = Depends(get_database_service),
):
    deleted = await run_in_threadpool(service.delete_history_record, record_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"History record {record_id} not found",
        )
    return DeleteResponse(status="success", message=f"History record {record_id} deleted")


__all__ = ["app"]


if __name__ == "__main__":  # pragma: no cover - convenience entry point
    import uvicorn

    uvicorn.run("imagegen.main:app", host="0.0.0.0", port=8000, reload=True)
