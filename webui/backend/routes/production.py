"""Plan, full-production, per-unit and stitch routes."""
from __future__ import annotations

import asyncio

from litestar import get, post
from litestar.exceptions import NotFoundException, ValidationException

from webui.backend.job_manager import job_manager
from webui.backend.models import PlanResponse, ProductionRequest, StitchResponse, UnitRequest


@get("/api/plan")
async def get_plan() -> PlanResponse:
    production = job_manager.production
    snapshot = production.store.snapshot()
    return PlanResponse(
        plan=snapshot["plan"],
        transitions=snapshot["transitions"],
        production_status=production.status.value if production.status else None,
        running=production.running,
        reference_images=len(production.reference_images),
    )


@post("/api/production")
async def start_production(data: ProductionRequest) -> dict:
    production = job_manager.production
    if production.running:
        raise ValidationException("A production run is already in progress")
    if not data.concept.strip() and all(not f.raw.strip() for f in production.store.plan.frames):
        raise ValidationException("Please enter a concept first.")

    job_id = job_manager.submit(
        "production", lambda p: p.run_full_production(data.concept, data.frame_count)
    )
    return {"job_id": job_id}


@post("/api/frames/{index:int}/render")
async def render_frame(index: int, data: UnitRequest | None = None) -> dict:
    _check_frame(index)
    job_id = job_manager.submit("frame-images", lambda p: p.render_frame(index, force=_force(data)))
    return {"job_id": job_id}


@post("/api/frames/{index:int}/video")
async def render_frame_video(index: int, data: UnitRequest | None = None) -> dict:
    _check_frame(index)
    job_id = job_manager.submit("frame-video", lambda p: p.render_frame_video(index, force=_force(data)))
    return {"job_id": job_id}


@post("/api/transitions/{index:int}/render")
async def render_transition(index: int, data: UnitRequest | None = None) -> dict:
    if not 0 <= index < len(job_manager.production.store.transitions):
        raise NotFoundException(f"Transition {index} not found")
    job_id = job_manager.submit("transition", lambda p: p.render_transition(index, force=_force(data)))
    return {"job_id": job_id}


@post("/api/stitch")
async def stitch() -> StitchResponse:
    try:
        output = await asyncio.to_thread(job_manager.production.stitch)
    except ValueError as e:
        raise ValidationException(str(e)) from e
    return StitchResponse(output_path=str(output))


def _check_frame(index: int) -> None:
    if not 0 <= index < len(job_manager.production.store.plan.frames):
        raise NotFoundException(f"Frame {index} not found")


def _force(data: UnitRequest | None) -> bool:
    return bool(data and data.force)
