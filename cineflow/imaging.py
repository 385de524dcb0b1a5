"""Image pre-processing for outbound requests.

Every image attached to a provider request passes through ``resize_image``
first so payloads stay bounded. Remote URLs are passed through untouched;
only inline ``data:`` URIs are decoded and re-encoded.
"""
from __future__ import annotations

import asyncio
import base64
import io
import logging

from PIL import Image, UnidentifiedImageError

from .config import (
    OUTBOUND_JPEG_QUALITY,
    OUTBOUND_MAX_DIM,
    UPLOAD_JPEG_QUALITY,
    UPLOAD_MAX_DIM,
)

log = logging.getLogger(__name__)

DEFAULT_MIME = "image/jpeg"


def is_data_uri(value: str) -> bool:
    return value.startswith("data:")


def split_data_uri(value: str) -> tuple[str, bytes]:
    """Return ``(mime_type, raw_bytes)``. A bare base64 string is taken as JPEG."""
    if "," not in value:
        return DEFAULT_MIME, base64.b64decode(value)
    header, data = value.split(",", 1)
    mime = header.split(";")[0].split(":")[-1] or DEFAULT_MIME
    return mime, base64.b64decode(data)


def to_data_uri(data: bytes, mime_type: str = DEFAULT_MIME) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def _reencode(data: bytes, max_dim: int, quality: int) -> bytes:
    img = Image.open(io.BytesIO(data))
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    width, height = img.size
    if max(width, height) > max_dim:
        scale = max_dim / max(width, height)
        img = img.resize((max(1, round(width * scale)), max(1, round(height * scale))), Image.LANCZOS)
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def resize_image(
    value: str,
    max_dim: int = OUTBOUND_MAX_DIM,
    quality: int = OUTBOUND_JPEG_QUALITY,
) -> str:
    """Bound the longest side of an inline image and re-encode it as JPEG."""
    if not value or not is_data_uri(value):
        return value
    _, data = split_data_uri(value)
    try:
        return to_data_uri(_reencode(data, max_dim, quality))
    except (UnidentifiedImageError, OSError) as e:
        log.warning("Could not re-encode image, sending original: %s", e)
        return value


def process_upload(data: bytes) -> str:
    """Normalise a user-uploaded file into a bounded JPEG data URI."""
    return to_data_uri(_reencode(data, UPLOAD_MAX_DIM, UPLOAD_JPEG_QUALITY))


async def prepare_images(values: list[str], max_dim: int = OUTBOUND_MAX_DIM) -> list[str]:
    """Resize a batch of images off the event loop."""
    return list(await asyncio.gather(
        *(asyncio.to_thread(resize_image, v, max_dim) for v in values)
    ))
