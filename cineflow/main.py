"""Headless entry point: draft, render and (optionally) stitch a production from the shell."""
from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

USAGE = "Usage: --concept <text> [--frames N] [--stitch]"


def _setup_logging() -> None:
    log_dir = Path.home() / ".cineflow"
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(log_dir / "cineflow.log"),
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_headless(concept: str, frame_count: int | None = None, stitch: bool = False) -> int:
    """Run the full production, printing progress to stdout. Returns an exit code."""
    from .config import Config
    from .production import Production, ProductionStatus

    config = Config.load()
    if not config.gemini_api_key:
        print("⚠  No GEMINI_API_KEY found. Set it in the environment or ~/.cineflow/config.json.")
        return 1
    if not config.fal_api_key:
        print("⚠  No FAL_API_KEY found, capacity errors will not fall back.")

    production = Production.from_config(config, progress_cb=print)
    status = asyncio.run(production.run_full_production(concept, frame_count))
    if status is not ProductionStatus.COMPLETE:
        print(f"Stopped: {status.value}")
        return 2

    if stitch:
        try:
            output = production.stitch()
        except (RuntimeError, ValueError) as e:
            print(f"Stitching failed: {e}")
            return 1
        print(f"\n✅ Output: {output}")
    return 0


def main() -> None:
    _setup_logging()

    args = sys.argv[1:]
    if "--concept" not in args:
        print(USAGE)
        sys.exit(1)

    idx = args.index("--concept")
    if idx + 1 >= len(args):
        print(USAGE)
        sys.exit(1)
    concept = args[idx + 1]

    frame_count = None
    if "--frames" in args:
        f_idx = args.index("--frames")
        try:
            frame_count = int(args[f_idx + 1])
        except (IndexError, ValueError):
            print(USAGE)
            sys.exit(1)

    sys.exit(run_headless(concept, frame_count, stitch="--stitch" in args))


if __name__ == "__main__":
    main()
