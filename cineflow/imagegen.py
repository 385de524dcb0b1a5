"""Keyframe image generation with candidate variations and fallback."""
from __future__ import annotations

import asyncio
import logging

from .config import CINEMATIC_REALISM_PROMPT, IMAGE_MODEL_PRO
from .fallback import FallbackRouter
from .imaging import prepare_images, resize_image
from .jobs import ImageRequest

log = logging.getLogger(__name__)

# Cycled per candidate so a multi-candidate batch covers different framings
CANDIDATE_VARIATIONS = [
    "Cinematic wide",
    "Dynamic medium",
    "Intimate close-up",
    "Low-angle heroic",
    "Abstract macro",
]


def candidate_prompt(base_prompt: str, candidate_index: int = 0, total_candidates: int = 1) -> str:
    if total_candidates > 1:
        variation = CANDIDATE_VARIATIONS[candidate_index % len(CANDIDATE_VARIATIONS)]
        base_prompt = f"{base_prompt} ({variation})"
    return f"{base_prompt} {CINEMATIC_REALISM_PROMPT}"


async def generate_keyframe_image(
    router: FallbackRouter,
    base_prompt: str,
    aspect_ratio: str,
    model: str,
    candidate_index: int = 0,
    total_candidates: int = 1,
    reference_images: list[str] | None = None,
) -> str:
    """Render one candidate. Returns a data URI (primary) or a remote URL (fallback)."""
    refs = await prepare_images(list(reference_images or []))
    request = ImageRequest(
        prompt=candidate_prompt(base_prompt, candidate_index, total_candidates),
        aspect_ratio=aspect_ratio,
        model=model,
        reference_images=refs,
    )
    return await router.run(request)


async def edit_image(router: FallbackRouter, image: str, instruction: str) -> str:
    """Refine an existing image from a text instruction."""
    prompt = f"""You are an elite cinematic image editor.
Modification: "{instruction}".

STRICT RULES:
1. No fantasy/magic elements.
2. Maintain original composition and subjects perfectly unless told to change.
3. Clean up text/footers/overlays by replacing them with natural background texture.
4. Ensure the lighting remains photorealistic.
5. {CINEMATIC_REALISM_PROMPT}

Output the modified image."""
    source = await asyncio.to_thread(resize_image, image)
    return await router.run(ImageRequest(prompt=prompt, model=IMAGE_MODEL_PRO, source_image=source))


async def generate_reference_images(router: FallbackRouter, query: str, count: int = 2) -> list[str]:
    """Search-grounded reference photography. Failed variations are dropped."""

    async def _one(idx: int) -> str:
        return await router.run(ImageRequest(
            prompt=(f'Professional cinematic reference photography for: "{query}". '
                    f"Variation {idx + 1}. {CINEMATIC_REALISM_PROMPT}"),
            aspect_ratio="1:1",
            model=IMAGE_MODEL_PRO,
            image_size="1K",
            web_search=True,
        ))

    results = await asyncio.gather(*(_one(i) for i in range(count)), return_exceptions=True)
    images = []
    for result in results:
        if isinstance(result, BaseException):
            log.warning("Reference image generation failed: %s", result)
        elif result:
            images.append(result)
    return images
