"""Gemini job clients: text, image and Veo video generation."""
from __future__ import annotations

import asyncio
import logging

import requests
from PIL import UnidentifiedImageError
from google import genai
from google.genai import types

from ..config import (
    FAL_REQUEST_TIMEOUT,
    IMAGE_MODEL_PRO,
    OUTBOUND_JPEG_QUALITY,
    OUTBOUND_MAX_DIM,
    VEO_POLL_POLICY,
    VIDEO_RESOLUTION,
    Config,
    PollPolicy,
)
from ..errors import MalformedResponseError
from ..imaging import DEFAULT_MIME, _reencode, split_data_uri, to_data_uri
from ..jobs import ImageRequest, JobHandle, PollStatus, TextRequest, VideoRequest

log = logging.getLogger(__name__)


def _download(url: str) -> tuple[str, bytes]:
    resp = requests.get(url, timeout=FAL_REQUEST_TIMEOUT)
    resp.raise_for_status()
    mime = resp.headers.get("Content-Type", DEFAULT_MIME).split(";")[0]
    return mime, resp.content


def _fetch_bounded(url: str) -> tuple[str, bytes]:
    """Download a remote image and bound it the same way inline images are."""
    mime, data = _download(url)
    try:
        return DEFAULT_MIME, _reencode(data, OUTBOUND_MAX_DIM, OUTBOUND_JPEG_QUALITY)
    except (UnidentifiedImageError, OSError) as e:
        log.warning("Could not re-encode %s, sending original: %s", url, e)
        return mime, data


async def _image_bytes(image: str) -> tuple[str, bytes]:
    """Inline bytes for a data URI or a remote URL (fallback results are remote)."""
    if image.startswith(("http://", "https://")):
        return await asyncio.to_thread(_fetch_bounded, image)
    return split_data_uri(image)


async def _inline_part(image: str) -> types.Part:
    mime, data = await _image_bytes(image)
    return types.Part.from_bytes(data=data, mime_type=mime)


async def _inline_image(image: str) -> types.Image:
    mime, data = await _image_bytes(image)
    return types.Image(image_bytes=data, mime_type=mime)


def _first_inline_image(response) -> str:
    for candidate in response.candidates or []:
        for part in (candidate.content.parts if candidate.content else None) or []:
            if part.inline_data and part.inline_data.data:
                return to_data_uri(part.inline_data.data, part.inline_data.mime_type or "image/png")
    raise MalformedResponseError("Generation failed: no image in response")


class _GeminiClient:
    name = "gemini"
    poll_policy: PollPolicy = VEO_POLL_POLICY

    def __init__(self, config: Config) -> None:
        self.config = config
        self._client: genai.Client | None = None

    @property
    def client(self) -> genai.Client:
        """Lazy client initialization"""
        if self._client is None:
            if not self.config.gemini_api_key:
                raise ValueError("GEMINI_API_KEY is not set.")
            self._client = genai.Client(api_key=self.config.gemini_api_key)
        return self._client

    async def poll(self, handle: JobHandle) -> PollStatus:
        raise NotImplementedError(f"{self.name} returns results immediately")


class GeminiTextClient(_GeminiClient):
    name = "gemini-text"

    async def submit(self, request: TextRequest) -> str:
        parts: list = [await _inline_part(img) for img in request.images]
        parts.append(types.Part.from_text(text=request.prompt))

        config = None
        if request.json_schema is not None:
            config = types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=request.json_schema,
            )
        elif request.web_search:
            config = types.GenerateContentConfig(
                tools=[types.Tool(google_search=types.GoogleSearch())],
            )

        response = await self.client.aio.models.generate_content(
            model=request.model,
            contents=parts,
            config=config,
        )
        text = (response.text or "").strip()
        if request.web_search:
            text += _grounding_links(response)
        return text


def _grounding_links(response) -> str:
    links = []
    for candidate in response.candidates or []:
        metadata = candidate.grounding_metadata
        for chunk in (metadata.grounding_chunks if metadata else None) or []:
            if chunk.web and chunk.web.uri and chunk.web.title:
                links.append(f"- [Ref: {chunk.web.title}]({chunk.web.uri})")
    if not links:
        return ""
    return "\n\n**Reference Sources:**\n" + "\n".join(links)


class GeminiImageClient(_GeminiClient):
    name = "gemini-image"

    async def submit(self, request: ImageRequest) -> str:
        refs = [await _inline_part(img) for img in request.reference_images]
        text = types.Part.from_text(text=request.prompt)

        if request.source_image:
            parts = [await _inline_part(request.source_image), text]
        elif request.model == IMAGE_MODEL_PRO:
            parts = [text, *refs]
        else:
            parts = [*refs, text]

        image_config = types.ImageConfig(aspect_ratio=None if request.source_image else request.aspect_ratio)
        if request.image_size or request.model == IMAGE_MODEL_PRO:
            image_config.image_size = request.image_size or "1K"

        config = types.GenerateContentConfig(image_config=image_config)
        if request.web_search:
            config.tools = [types.Tool(google_search=types.GoogleSearch())]

        log.info("Generating image with %s", request.model)
        response = await self.client.aio.models.generate_content(
            model=request.model,
            contents=parts,
            config=config,
        )
        return _first_inline_image(response)


class GeminiVideoClient(_GeminiClient):
    """Veo image-to-video via the Gemini API long-running operations."""

    name = "gemini-veo"
    poll_policy = VEO_POLL_POLICY

    async def submit(self, request: VideoRequest) -> JobHandle:
        config = types.GenerateVideosConfig(
            number_of_videos=1,
            resolution=VIDEO_RESOLUTION,
            aspect_ratio=request.aspect_ratio,
        )
        if request.end_image:
            config.last_frame = await _inline_image(request.end_image)

        log.info("Submitting Veo job (%s): %s", request.model, request.prompt[:120])
        operation = await self.client.aio.models.generate_videos(
            model=request.model,
            prompt=request.prompt,
            image=await _inline_image(request.start_image),
            config=config,
        )
        return JobHandle(job_id=operation.name or "", backend=self.name, data={"operation": operation})

    async def poll(self, handle: JobHandle) -> PollStatus:
        operation = await self.client.aio.operations.get(handle.data["operation"])
        handle.data["operation"] = operation

        if not operation.done:
            return PollStatus.pending()
        if operation.error:
            return PollStatus.failed(str(operation.error))

        generated = getattr(operation.response, "generated_videos", None) if operation.response else None
        uri = generated[0].video.uri if generated and generated[0].video else None
        if not uri:
            raise MalformedResponseError("Synthesis yielded no result.")

        # The download link needs the API key to be fetched
        separator = "&" if "?" in uri else "?"
        return PollStatus.done(f"{uri}{separator}key={self.config.gemini_api_key}")
