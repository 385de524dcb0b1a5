"""Pydantic request/response models for the CineFlow Web API."""
from __future__ import annotations

from typing import Literal
from pydantic import BaseModel, Field

from cineflow.config import IMAGE_MODEL_PRO, VIDEO_MODEL_FAST


class ProductionRequest(BaseModel):
    concept: str = ""
    frame_count: int | None = Field(default=None, ge=1, le=12)


class UnitRequest(BaseModel):
    force: bool = False  # re-render even if already completed


class JobStatus(BaseModel):
    job_id: str
    kind: str
    state: Literal["queued", "running", "done", "cancelled", "failed"]
    started_at: float | None = None
    finished_at: float | None = None
    result: str | None = None
    error: str | None = None


class PlanResponse(BaseModel):
    plan: dict
    transitions: list[dict]
    production_status: str | None = None
    running: bool = False
    reference_images: int = 0


class StitchResponse(BaseModel):
    output_path: str


class OutputFile(BaseModel):
    name: str
    path: str
    size_bytes: int
    created_at: float


class ConfigPayload(BaseModel):
    gemini_api_key: str = ""
    fal_api_key: str = ""
    output_dir: str = "output"
    default_image_model: str = IMAGE_MODEL_PRO
    default_video_model: str = VIDEO_MODEL_FAST
