"""Provider-neutral job contract shared by every backend.

A ``JobClient`` turns one logical request into either an immediate result
or a ``JobHandle`` for a long-running operation, and answers status checks
for the handles it issued. The orchestrators never look past this
contract, which is what lets the fallback router swap backends freely.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from .config import IMAGE_MODEL_PRO, TEXT_MODEL, VIDEO_MODEL_FAST, PollPolicy


@dataclass
class TextRequest:
    prompt: str
    images: list[str] = field(default_factory=list)
    model: str = TEXT_MODEL
    json_schema: Optional[dict] = None
    web_search: bool = False


@dataclass
class ImageRequest:
    prompt: str
    aspect_ratio: str = "16:9"
    model: str = IMAGE_MODEL_PRO
    reference_images: list[str] = field(default_factory=list)
    source_image: Optional[str] = None  # set for edits of an existing image
    image_size: Optional[str] = None
    web_search: bool = False


@dataclass
class VideoRequest:
    prompt: str
    start_image: str
    end_image: Optional[str] = None
    aspect_ratio: str = "16:9"
    model: str = VIDEO_MODEL_FAST


JobRequest = Union[TextRequest, ImageRequest, VideoRequest]


@dataclass
class JobHandle:
    job_id: str
    backend: str
    data: dict = field(default_factory=dict)


class PollState(str, enum.Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PollStatus:
    state: PollState
    result: Any = None
    progress_hint: Optional[float] = None
    reason: str = ""

    @classmethod
    def pending(cls, progress_hint: float | None = None) -> "PollStatus":
        return cls(PollState.PENDING, progress_hint=progress_hint)

    @classmethod
    def done(cls, result: Any) -> "PollStatus":
        return cls(PollState.DONE, result=result)

    @classmethod
    def failed(cls, reason: str) -> "PollStatus":
        return cls(PollState.FAILED, reason=reason)


class JobClient(Protocol):
    name: str
    poll_policy: PollPolicy

    async def submit(self, request: Any) -> Any:
        """Return the final result, or a ``JobHandle`` to poll."""
        ...

    async def poll(self, handle: JobHandle) -> PollStatus:
        ...
