"""Stitch finished clips into one movie with ffmpeg."""
from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path

import requests

log = logging.getLogger(__name__)

FPS = 24
DOWNLOAD_TIMEOUT = 300


def _check_ffmpeg() -> None:
    if not shutil.which("ffmpeg"):
        raise RuntimeError("ffmpeg not found in PATH. Please install ffmpeg.")


def _fetch(url: str, dest: Path, session: requests.Session) -> Path:
    if not url.startswith(("http://", "https://")):
        # Already a local file
        return Path(url)
    with session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
        resp.raise_for_status()
        with open(dest, "wb") as f:
            for chunk in resp.iter_content(chunk_size=1 << 16):
                f.write(chunk)
    return dest


def _concat(clip_paths: list[Path], output: Path) -> None:
    list_file = output.parent / f"{output.stem}_concat.txt"
    with open(list_file, "w") as f:
        for p in clip_paths:
            f.write(f"file '{p.resolve()}'\n")

    cmd = [
        "ffmpeg", "-y",
        "-f", "concat", "-safe", "0",
        "-i", str(list_file),
        "-c:v", "libx264", "-preset", "medium", "-crf", "23",
        "-pix_fmt", "yuv420p",
        "-r", str(FPS),
        "-an",
        str(output),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=600)
    finally:
        list_file.unlink(missing_ok=True)
    if result.returncode != 0:
        stderr = result.stderr.decode(errors="replace")[-500:]
        raise RuntimeError(f"ffmpeg concat failed: {stderr}")


def stitch_videos(
    urls: list[str],
    output_dir: Path,
    output_path: Path | None = None,
    session: requests.Session | None = None,
) -> Path:
    """Download ``urls`` in order and concatenate them into a single MP4."""
    if len(urls) < 2:
        raise ValueError(f"Stitching needs at least 2 clips, got {len(urls)}")
    _check_ffmpeg()

    if output_path is None:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_path = Path(output_dir) / f"cineflow_{ts}.mp4"
    output_path.parent.mkdir(parents=True, exist_ok=True)

    session = session or requests.Session()
    with tempfile.TemporaryDirectory(prefix="cineflow_") as tmpdir:
        clips = []
        for i, url in enumerate(urls):
            log.info("Fetching clip %d/%d", i + 1, len(urls))
            clips.append(_fetch(url, Path(tmpdir) / f"clip_{i:03d}.mp4", session))
        _concat(clips, output_path)

    log.info("Stitched %d clips into %s", len(urls), output_path)
    return output_path
