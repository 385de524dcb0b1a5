"""Config read/write routes."""
from __future__ import annotations

from pathlib import Path

from litestar import get, post
from litestar.exceptions import ValidationException

from cineflow.config import IMAGE_MODELS, VIDEO_MODELS, Config
from webui.backend.job_manager import job_manager
from webui.backend.models import ConfigPayload


@get("/api/config")
async def get_config() -> ConfigPayload:
    cfg = Config.load()
    return ConfigPayload(
        # Mask secret keys, show only first/last 4 chars
        gemini_api_key=_mask(cfg.gemini_api_key),
        fal_api_key=_mask(cfg.fal_api_key),
        output_dir=str(cfg.output_dir),
        default_image_model=cfg.default_image_model,
        default_video_model=cfg.default_video_model,
    )


@post("/api/config")
async def save_config(data: ConfigPayload) -> dict:
    if data.default_image_model not in IMAGE_MODELS:
        raise ValidationException(f"Unknown image model {data.default_image_model!r}")
    if data.default_video_model not in VIDEO_MODELS:
        raise ValidationException(f"Unknown video model {data.default_video_model!r}")

    cfg = Config.load()
    # Only update secrets if the user sent a non-masked value
    if data.gemini_api_key and "…" not in data.gemini_api_key:
        cfg.gemini_api_key = data.gemini_api_key
    if data.fal_api_key and "…" not in data.fal_api_key:
        cfg.fal_api_key = data.fal_api_key
    cfg.output_dir = Path(data.output_dir)
    cfg.default_image_model = data.default_image_model
    cfg.default_video_model = data.default_video_model
    cfg.save()
    job_manager.reload_config(cfg)
    return {"ok": True}


def _mask(value: str) -> str:
    if not value:
        return ""
    return value[:4] + "…" + value[-4:] if len(value) > 8 else "…"
