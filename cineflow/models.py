"""Production plan data model.

The ``status`` fields on images, frames and transitions are small state
machines. Every status change made by the orchestrators goes through
``advance`` so an illegal jump (say ``idle -> completed``) fails loudly
instead of silently corrupting the plan.
"""
from __future__ import annotations

import enum
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .config import (
    DEFAULT_FRAME_VIDEO_PROMPT,
    DEFAULT_TRANSITION_DURATION,
    DEFAULT_TRANSITION_PROMPT,
    IMAGE_MODEL_PRO,
    MAX_CANDIDATES,
    MIN_CANDIDATES,
    VIDEO_MODEL_FAST,
)
from .errors import IllegalTransitionError

AspectRatio = Literal["16:9", "9:16"]
NarrativeMode = Literal["story", "montage"]
TransitionType = Literal["bridge", "standalone"]


class Status(str, enum.Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


class EntityKind(str, enum.Enum):
    IMAGE = "image"
    FRAME = "frame"
    VIDEO = "video"  # a frame's standalone clip or a transition


_S = Status
STATUS_TRANSITIONS: dict[EntityKind, dict[Status, frozenset[Status]]] = {
    EntityKind.IMAGE: {
        _S.IDLE: frozenset({_S.GENERATING}),
        _S.GENERATING: frozenset({_S.COMPLETED, _S.ERROR}),
        _S.COMPLETED: frozenset(),
        _S.ERROR: frozenset(),
    },
    # idle/error -> completed: a custom upload completes the frame directly
    EntityKind.FRAME: {
        _S.IDLE: frozenset({_S.GENERATING, _S.COMPLETED}),
        _S.GENERATING: frozenset({_S.COMPLETED, _S.ERROR}),
        _S.COMPLETED: frozenset({_S.GENERATING, _S.IDLE}),
        _S.ERROR: frozenset({_S.GENERATING, _S.COMPLETED}),
    },
    EntityKind.VIDEO: {
        _S.IDLE: frozenset({_S.GENERATING}),
        _S.GENERATING: frozenset({_S.COMPLETED, _S.ERROR}),
        _S.COMPLETED: frozenset({_S.IDLE}),
        _S.ERROR: frozenset({_S.GENERATING}),
    },
}


def can_advance(kind: EntityKind, current: Status, target: Status) -> bool:
    return current == target or target in STATUS_TRANSITIONS[kind][current]


def advance(kind: EntityKind, current: Status, target: Status) -> Status:
    """Return ``target`` if ``current -> target`` is legal for ``kind``."""
    if not can_advance(kind, current, target):
        raise IllegalTransitionError(
            f"{kind.value}: cannot move from {current.value} to {target.value}"
        )
    return target


def new_image_id() -> str:
    return uuid.uuid4().hex


class FrameImage(BaseModel):
    """One rendered or uploaded candidate for a frame."""
    id: str = Field(default_factory=new_image_id)
    url: str = ""
    status: Status = Status.IDLE
    model_id: str = IMAGE_MODEL_PRO
    progress: float = Field(default=0, ge=0, le=100)


class Frame(BaseModel):
    index: int = Field(..., ge=1, description="1-based position in the storyboard")
    raw: str = Field(default="", description="Free-text scene description")
    images: List[FrameImage] = Field(default_factory=list)
    selected_image_index: int = 0
    candidate_count: int = Field(default=1, ge=MIN_CANDIDATES, le=MAX_CANDIDATES)
    status: Status = Status.IDLE
    image_model: str = IMAGE_MODEL_PRO
    video_url: Optional[str] = None
    video_status: Status = Status.IDLE
    video_progress: float = Field(default=0, ge=0, le=100)
    video_prompt: str = DEFAULT_FRAME_VIDEO_PROMPT
    video_model: str = VIDEO_MODEL_FAST

    @property
    def master_image(self) -> Optional[FrameImage]:
        """The selected candidate, or None when the selection is out of range."""
        if 0 <= self.selected_image_index < len(self.images):
            return self.images[self.selected_image_index]
        return None

    def find_image(self, image_id: str) -> int:
        for pos, img in enumerate(self.images):
            if img.id == image_id:
                return pos
        return -1


class Transition(BaseModel):
    from_index: int
    to_index: int
    type: TransitionType = "bridge"
    director_prompt: str = DEFAULT_TRANSITION_PROMPT
    video_url: Optional[str] = None
    model_id: str = VIDEO_MODEL_FAST
    status: Status = Status.IDLE
    progress: float = Field(default=0, ge=0, le=100)


class CharacterSpec(BaseModel):
    name: str
    description: str = ""
    images: List[str] = Field(default_factory=list, description="Data URIs or URLs")


class GlobalConstraints(BaseModel):
    continuity_rules: List[str] = Field(default_factory=list)
    palette_notes: str = ""
    do_not_include: List[str] = Field(default_factory=list)
    characters: List[CharacterSpec] = Field(default_factory=list)


class TransitionPolicy(BaseModel):
    mode: Literal["simple", "director"] = "director"
    duration_seconds: float = DEFAULT_TRANSITION_DURATION


class Plan(BaseModel):
    """Root aggregate for one editing session."""
    title: str = "Untitled Project"
    aspect_ratio: AspectRatio = "16:9"
    narrative_mode: NarrativeMode = "story"
    global_constraints: GlobalConstraints = Field(default_factory=GlobalConstraints)
    frames: List[Frame] = Field(default_factory=list)
    transition_policy: TransitionPolicy = Field(default_factory=TransitionPolicy)

    def character_images(self) -> list[str]:
        return [img for c in self.global_constraints.characters for img in c.images]


def blank_frame(index: int, raw: str = "", image_model: str = IMAGE_MODEL_PRO,
                video_model: str = VIDEO_MODEL_FAST) -> Frame:
    return Frame(index=index, raw=raw, image_model=image_model, video_model=video_model)


def default_transition(position: int) -> Transition:
    """Transition slot ``position`` (0-based) bridging frames position+1 -> position+2."""
    return Transition(from_index=position + 1, to_index=position + 2)
