"""Settings, model identifiers and API key management."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

CONFIG_DIR = Path.home() / ".cineflow"
CONFIG_FILE = CONFIG_DIR / "config.json"

# Image generation (primary backend)
IMAGE_MODEL_PRO = "gemini-3-pro-image-preview"
IMAGE_MODEL_FLASH = "gemini-2.5-flash-image"
IMAGE_MODEL_UPLOAD = "custom-upload"
IMAGE_MODELS = (IMAGE_MODEL_PRO, IMAGE_MODEL_FLASH, IMAGE_MODEL_UPLOAD)

# Video generation (primary backend)
VIDEO_MODEL_FAST = "veo-3.1-fast-generate-preview"
VIDEO_MODEL_PREMIUM = "veo-3.1-generate-preview"
VIDEO_MODELS = (VIDEO_MODEL_FAST, VIDEO_MODEL_PREMIUM)
VIDEO_RESOLUTION = "720p"

# Drafting, director prompts, image descriptions
TEXT_MODEL = "gemini-3-flash-preview"

# Fal.ai endpoints (secondary backend)
FAL_SYNC_HOST = "https://fal.run"
FAL_QUEUE_HOST = "https://queue.fal.run"
FAL_IMAGE_ENDPOINT = "fal-ai/imagen3"
FAL_TEXT_ENDPOINT = "fal-ai/any-llm"
FAL_TEXT_MODEL = "gemini-1.5-pro"
FAL_VIDEO_ENDPOINT = "fal-ai/veo3.1/image-to-video"
FAL_VIDEO_FAST_ENDPOINT = "fal-ai/veo3.1/fast/image-to-video"
FAL_REQUEST_TIMEOUT = 120  # seconds, per HTTP call

# Outbound image payloads are re-encoded to keep requests small
OUTBOUND_MAX_DIM = 1024
OUTBOUND_JPEG_QUALITY = 85
UPLOAD_MAX_DIM = 1536
UPLOAD_JPEG_QUALITY = 90
MAX_REFERENCE_IMAGES = 4

# Frames
MIN_CANDIDATES = 1
MAX_CANDIDATES = 5
DEFAULT_FRAME_COUNT = 3

# Synthetic progress for image jobs (no real progress is reported)
IMAGE_PROGRESS_SEED = 5
IMAGE_TICK_INTERVAL = 0.4  # seconds
IMAGE_TICK_STEP = 2
IMAGE_TICK_CEILING = 95

# Director prompts still holding these texts count as "not authored"
DEFAULT_FRAME_VIDEO_PROMPT = "Cinematic motion..."
DEFAULT_TRANSITION_PROMPT = "Cinematic transition..."
DEFAULT_TRANSITION_DURATION = 2.5

# Retry once on a transient submit failure, after this delay
TRANSIENT_RETRY_DELAY = 2.0

CINEMATIC_REALISM_PROMPT = (
    "STRICT ART DIRECTION: Focus on grounded, realistic cinematography. Use natural "
    "lighting, professional film stocks (Arri Alexa, Red V-Raptor looks), and realistic "
    "physics. AVOID all fantasy, magic, or sci-fi visual effects (glows, sparkles, "
    "holograms, unprompted neon, magical particles) unless the user specifically requests "
    "them. The result must look like a real, high-budget cinematic production."
)


@dataclass(frozen=True)
class PollPolicy:
    """Timing rules for waiting on a long-running provider operation.

    The sleep before each status check is
    ``min(max_interval, interval + consecutive_errors * backoff_step)``.
    Polling gives up after ``timeout`` seconds of wall-clock time or
    ``max_attempts`` status checks, whichever comes first.
    """

    interval: float
    max_interval: float
    backoff_step: float
    timeout: float
    max_attempts: int | None = None
    max_consecutive_errors: int = 30
    initial_delay: float = 0.0
    progress_start: float = 5.0
    progress_step: float = 0.4


# Veo via the Gemini API: fixed 6s cadence, ~250 checks
VEO_POLL_POLICY = PollPolicy(
    interval=6.0,
    max_interval=6.0,
    backoff_step=0.0,
    timeout=1200.0,
    max_attempts=250,
)

# Fal queue API: 2s growing to 10s under transient errors, 20 minute ceiling
FAL_POLL_POLICY = PollPolicy(
    interval=2.0,
    max_interval=10.0,
    backoff_step=1.0,
    timeout=1200.0,
    max_consecutive_errors=30,
    initial_delay=1.0,
    progress_start=15.0,
    progress_step=0.5,
)


@dataclass
class Config:
    gemini_api_key: str = ""
    fal_api_key: str = ""
    output_dir: Path = field(default_factory=lambda: Path("output"))
    default_image_model: str = IMAGE_MODEL_PRO
    default_video_model: str = VIDEO_MODEL_FAST

    @classmethod
    def load(cls) -> "Config":
        """Load config from env vars then config file."""
        cfg = cls()

        # Env var takes priority
        gemini_key = os.environ.get("GEMINI_API_KEY", "") or os.environ.get("API_KEY", "")
        fal_key = os.environ.get("FAL_API_KEY", "")

        if CONFIG_FILE.exists():
            try:
                data = json.loads(CONFIG_FILE.read_text(encoding="utf-8-sig"))
                if not gemini_key:
                    gemini_key = data.get("gemini_api_key", "")
                if not fal_key:
                    fal_key = data.get("fal_api_key", "")
                if out := data.get("output_dir"):
                    cfg.output_dir = Path(out)
                if (im := data.get("default_image_model")) in IMAGE_MODELS:
                    cfg.default_image_model = im
                if (vm := data.get("default_video_model")) in VIDEO_MODELS:
                    cfg.default_video_model = vm
            except (json.JSONDecodeError, OSError):
                pass

        cfg.gemini_api_key = gemini_key
        cfg.fal_api_key = fal_key
        return cfg

    def save(self) -> None:
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "gemini_api_key": self.gemini_api_key,
            "fal_api_key": self.fal_api_key,
            "output_dir": str(self.output_dir),
            "default_image_model": self.default_image_model,
            "default_video_model": self.default_video_model,
        }
        CONFIG_FILE.write_text(json.dumps(data, indent=2))
