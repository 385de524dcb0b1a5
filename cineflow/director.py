"""Text-model calls: plan drafting, director prompts, image descriptions, visual research.

All of them go through a text ``FallbackRouter`` (Gemini first, Fal's
any-llm endpoint when Gemini is out of capacity).
"""
from __future__ import annotations

import json
import logging
import re

from .config import CINEMATIC_REALISM_PROMPT
from .errors import MalformedResponseError
from .fallback import FallbackRouter
from .imaging import is_data_uri, prepare_images
from .jobs import TextRequest
from .models import Frame, Plan, TransitionType

log = logging.getLogger(__name__)

PLAN_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING"},
        "globalConstraints": {
            "type": "OBJECT",
            "properties": {
                "paletteNotes": {"type": "STRING"},
                "continuityRules": {"type": "ARRAY", "items": {"type": "STRING"}},
                "characters": {
                    "type": "ARRAY",
                    "items": {
                        "type": "OBJECT",
                        "properties": {
                            "name": {"type": "STRING"},
                            "description": {"type": "STRING"},
                        },
                        "required": ["name", "description"],
                    },
                },
            },
            "required": ["paletteNotes", "continuityRules"],
        },
        "frames": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {"raw": {"type": "STRING"}},
                "required": ["raw"],
            },
        },
    },
    "required": ["title", "globalConstraints", "frames"],
}

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
_BOLD_LABEL_RE = re.compile(r"\*\*[^*]+?\*\*:?\s*")

FALLBACK_DIRECTOR_PROMPT = "Cinematic synthesis."


def clean_json(text: str | None) -> str:
    """Strip a markdown code fence wrapped around a JSON payload."""
    if not text:
        return "{}"
    cleaned = text.strip()
    match = _FENCE_RE.match(cleaned)
    return match.group(1) if match else cleaned


def parse_json_response(text: str | None) -> dict:
    """Extract the JSON object from a model response, fenced or not."""
    cleaned = clean_json(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # Find bare JSON object
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise MalformedResponseError(f"No valid JSON found in response:\n{cleaned[:500]}")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"No valid JSON found in response:\n{cleaned[:500]}") from e
    if not isinstance(data, dict):
        raise MalformedResponseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


async def generate_project_plan(
    router: FallbackRouter,
    concept: str,
    frame_count: int,
    reference_images: list[str],
    plan: Plan,
) -> dict:
    """Ask the model for a title, global constraints and ``frame_count`` frame descriptions.

    Returns the raw camelCase dict; ``frames`` is a list of ``{"raw": ...}``.
    """
    characters = plan.global_constraints.characters
    images = await prepare_images(list(reference_images) + plan.character_images())

    notes = []
    if reference_images:
        notes.append(f"The first {len(reference_images)} attached images are visual style references.")
    for char in characters:
        notes.append(f"Entity Ref: {char.name} ({len(char.images)} reference images attached)")

    prompt = "\n".join([
        f'Act as a Director. Concept: "{concept}". Mode: {plan.narrative_mode}. {CINEMATIC_REALISM_PROMPT}',
        *notes,
        f"Frame Count: {frame_count}",
        f'Style Preference: "{plan.global_constraints.palette_notes}"',
        "Return JSON matching the schema.",
    ])

    text = await router.run(TextRequest(prompt=prompt, images=images, json_schema=PLAN_SCHEMA))
    data = parse_json_response(text)
    if not isinstance(data.get("frames"), list):
        raise MalformedResponseError("Drafted plan has no frames list")
    log.info("Drafted plan %r with %d frames", data.get("title"), len(data["frames"]))
    return data


async def generate_director_prompt(
    router: FallbackRouter,
    from_frame: Frame,
    to_frame: Frame | None = None,
    plan: Plan | None = None,
    transition_type: TransitionType = "bridge",
) -> str:
    """Write the motion instruction for one clip (standalone) or one bridge."""
    bridge = to_frame is not None and transition_type == "bridge"
    style = f"Project Style: {plan.global_constraints.palette_notes}." if plan else ""
    if bridge:
        task = ("Create a smart cinematic interpolation bridge between Scene A and Scene B. "
                "Describe the camera movement and physical flow.")
    else:
        task = ("Animate this scene into a high-impact 5-second cinematic clip. Focus on internal "
                "motion, environmental effects (smoke, light shifts), and subtle camera movement.")

    grounding: list[tuple[str, str]] = []
    for frame, label in ((from_frame, "START_FRAME"), (to_frame if bridge else None, "END_FRAME")):
        master = frame.master_image if frame else None
        if master and is_data_uri(master.url):
            grounding.append((label, master.url))

    lines = [
        "Act as a Professional Film Director.",
        style,
        f"Scene A: {from_frame.raw}",
        f"Scene B: {to_frame.raw}" if to_frame else "",
        f"Task: {task}",
        CINEMATIC_REALISM_PROMPT,
    ]
    if grounding:
        lines.append("Attached images, in order: " + ", ".join(label for label, _ in grounding))
    lines.append("Return ONLY the final prompt for the video synthesis engine.")

    images = await prepare_images([url for _, url in grounding])
    text = await router.run(TextRequest(prompt="\n".join(l for l in lines if l), images=images))
    return (text or "").strip() or FALLBACK_DIRECTOR_PROMPT


async def describe_image(router: FallbackRouter, image: str) -> str:
    images = await prepare_images([image])
    text = await router.run(TextRequest(
        prompt=("Describe this image for a film storyboard. Use realistic cinematography "
                "terminology. Single paragraph."),
        images=images,
    ))
    return _BOLD_LABEL_RE.sub("", (text or "").strip())


async def search_visual_trends(router: FallbackRouter, query: str) -> str:
    """Web-grounded "DP briefing" used to seed the palette notes."""
    prompt = f"""Research professional filmic references and real-world high-end advertising aesthetics for: "{query}".
GOAL: Provide a "Cinematic Visual Recipe" for an AI image generator.
1. Search for real photography/film trends.
2. Describe COLOR PALETTE precisely.
3. Describe LIGHTING SETUP.
4. Describe CAMERA GEAR.
5. {CINEMATIC_REALISM_PROMPT}
Provide the response as a professional DP briefing."""
    text = await router.run(TextRequest(prompt=prompt, web_search=True))
    return f"### DP BRIEFING: VISUAL TRENDS\n\n{(text or '').strip() or 'No results.'}"
