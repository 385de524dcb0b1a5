"""Litestar ASGI application for the CineFlow Studio API."""
from __future__ import annotations

import sys
from pathlib import Path

from litestar import Litestar
from litestar.config.cors import CORSConfig
from litestar.logging import LoggingConfig

# Ensure the repo root is on sys.path so `cineflow` can be imported
REPO_ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))

from webui.backend.job_manager import job_manager
from webui.backend.routes.config import get_config, save_config
from webui.backend.routes.jobs import cancel_job, get_job
from webui.backend.routes.outputs import download_output, list_outputs
from webui.backend.routes.production import (
    get_plan,
    render_frame,
    render_frame_video,
    render_transition,
    start_production,
    stitch,
)
from webui.backend.routes.stream import stream_job


app = Litestar(
    route_handlers=[
        get_config,
        save_config,
        get_plan,
        start_production,
        render_frame,
        render_frame_video,
        render_transition,
        stitch,
        list_outputs,
        download_output,
        get_job,
        cancel_job,
        stream_job,
    ],
    cors_config=CORSConfig(
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    ),
    on_shutdown=[job_manager.shutdown],
    logging_config=LoggingConfig(
        loggers={
            "cineflow": {"level": "INFO", "handlers": ["queue_listener"]},
            "webui": {"level": "INFO", "handlers": ["queue_listener"]},
        }
    ),
)
