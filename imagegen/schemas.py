"""Pydantic models shared by the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class GenerateRequest(BaseModel):
    # Validated by the service so that a missing prompt is reported as a 400 error envelope.
    prompt: Optional[str] = Field(default=None, description="Text prompt for image generation")
    model: Optional[str] = Field(
        default="primary",
        description="Model family: 'primary' (realistic) or 'alternate' (anime)",
    )


class GenerateResponse(BaseModel):
    output: str = Field(..., description="Generated image as a base64 data URL")


class ErrorResponse(BaseModel):
    error: str
    estimated_time: Optional[int] = Field(
        default=None,
        description="Seconds to wait at least before retrying when the model is loading",
    )


class HistoryRecordRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, description="Id of the authenticated user owning the image")
    image_url: str = Field(..., min_length=1, description="Data URL or link to the generated image")
    prompt: str = Field(..., description="Prompt the image was generated from")
    model: str = Field(..., description="Model family used for the generation")


class HistoryRecordResponse(BaseModel):
    id: int = Field(..., description="ID of the stored history record")


class HistoryRecord(BaseModel):
    id: int
    owner_id: str
    image_url: str
    prompt: str
    model: str
    created_at: datetime


class HistoryListResponse(BaseModel):
    records: List[HistoryRecord]


class DeleteResponse(BaseModel):
    status: str
    message: str
