"""Video synthesis: Veo submit+poll, Fal Veo fallback."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .config import VIDEO_MODEL_FAST
from .fallback import FallbackRouter
from .imaging import resize_image
from .jobs import VideoRequest
from .models import TransitionType

log = logging.getLogger(__name__)


async def generate_transition_video(
    router: FallbackRouter,
    prompt: str,
    start_image: str,
    end_image: str | None = None,
    aspect_ratio: str = "16:9",
    model: str = VIDEO_MODEL_FAST,
    transition_type: TransitionType = "standalone",
    on_progress: Callable[[float], None] | None = None,
) -> str:
    """Animate ``start_image`` (towards ``end_image`` for bridges). Returns the clip URL."""
    reported = 0.0

    def _progress(value: float) -> None:
        # Fallback restarts its own estimate; never report a step backwards
        nonlocal reported
        if on_progress and value >= reported:
            reported = value
            on_progress(value)

    _progress(5)
    start = await asyncio.to_thread(resize_image, start_image)
    end = None
    if transition_type == "bridge" and end_image:
        end = await asyncio.to_thread(resize_image, end_image)

    request = VideoRequest(
        prompt=prompt,
        start_image=start,
        end_image=end,
        aspect_ratio=aspect_ratio,
        model=model,
    )
    url = await router.run(request, on_progress=_progress)
    log.info("Video ready (%s): %s", transition_type, url[:120])
    return url
