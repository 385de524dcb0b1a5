"""Stitched film listing and download routes."""
from __future__ import annotations

from pathlib import Path

from litestar import get
from litestar.exceptions import NotFoundException
from litestar.response import File

from cineflow.config import Config
from webui.backend.models import OutputFile


def _output_dir() -> Path:
    return Path(Config.load().output_dir).resolve()


@get("/api/outputs/download")
async def download_output(name: str) -> File:
    """Stream a stitched film (file name passed as query param)."""
    output_dir = _output_dir()
    p = (output_dir / name).resolve()
    if p.parent != output_dir or p.suffix != ".mp4" or not p.exists():
        raise NotFoundException(f"File not found: {name}")
    return File(path=p, filename=p.name, media_type="video/mp4")


@get("/api/outputs")
async def list_outputs() -> list[OutputFile]:
    """List stitched MP4 files in the configured output directory, newest first."""
    output_dir = _output_dir()
    if not output_dir.exists():
        return []

    files = sorted(output_dir.glob("*.mp4"), key=lambda p: p.stat().st_mtime, reverse=True)
    result = []
    for f in files:
        stat = f.stat()
        result.append(OutputFile(
            name=f.name,
            path=str(f),
            size_bytes=stat.st_size,
            created_at=stat.st_mtime,
        ))
    return result
