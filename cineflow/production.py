"""One editing session: the plan, its backends and the one-click production run."""
from __future__ import annotations

import asyncio
import enum
import logging
from pathlib import Path
from typing import Callable

from .config import DEFAULT_FRAME_COUNT, IMAGE_MODEL_UPLOAD, IMAGE_TICK_INTERVAL, MAX_REFERENCE_IMAGES, Config
from .director import describe_image, generate_director_prompt, generate_project_plan, search_visual_trends
from .errors import MalformedResponseError, is_capacity_error
from .fallback import FallbackRouter
from .imagegen import edit_image, generate_reference_images
from .imaging import is_data_uri, process_upload, split_data_uri
from .models import CharacterSpec, EntityKind, Frame, FrameImage, Plan, Status, advance, blank_frame
from .orchestrator import FrameOrchestrator, VideoOrchestrator
from .stitch import stitch_videos
from .store import PlanStore
from .utils import (
    FalImageClient,
    FalTextClient,
    FalVideoClient,
    GeminiImageClient,
    GeminiTextClient,
    GeminiVideoClient,
)

log = logging.getLogger(__name__)


class ProductionStatus(str, enum.Enum):
    COMPLETE = "Production Complete!"
    QUOTA = "Quota Hit - Resumable"
    PAUSED = "Production Paused"


async def _gather_fail_fast(tasks: list[asyncio.Task]) -> list:
    """Await all tasks; on the first failure cancel the rest and re-raise."""
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class Production:
    """A storyboard session wired to its text, image and video backends."""

    def __init__(
        self,
        store: PlanStore,
        text_router: FallbackRouter,
        image_router: FallbackRouter,
        video_router: FallbackRouter,
        config: Config | None = None,
        progress_cb: Callable[[str], None] | None = None,
        reference_images: list[str] | None = None,
        tick_interval: float = IMAGE_TICK_INTERVAL,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self.text_router = text_router
        self.image_router = image_router
        self.video_router = video_router
        self.progress_cb = progress_cb or (lambda msg: None)
        self._reference_images: list[str] = list(reference_images or [])[:MAX_REFERENCE_IMAGES]
        self.frames = FrameOrchestrator(store, image_router, self.grounding_images, tick_interval)
        self.videos = VideoOrchestrator(store, video_router, text_router)
        self.status: ProductionStatus | None = None
        self.running = False

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: PlanStore | None = None,
        progress_cb: Callable[[str], None] | None = None,
    ) -> "Production":
        """Gemini as primary backend, Fal.ai as capacity fallback."""
        return cls(
            store or PlanStore(),
            text_router=FallbackRouter(GeminiTextClient(config), FalTextClient(config)),
            image_router=FallbackRouter(GeminiImageClient(config), FalImageClient(config)),
            video_router=FallbackRouter(GeminiVideoClient(config), FalVideoClient(config)),
            config=config,
            progress_cb=progress_cb,
        )

    # ------------------------------------------------------------------
    # Reference images
    # ------------------------------------------------------------------

    @property
    def reference_images(self) -> list[str]:
        return list(self._reference_images)

    def grounding_images(self) -> list[str]:
        """Session references plus every character's reference images."""
        return self._reference_images + self.store.plan.character_images()

    def add_reference_image(self, image: str) -> bool:
        if len(self._reference_images) >= MAX_REFERENCE_IMAGES:
            log.warning("Reference image limit (%d) reached, ignoring", MAX_REFERENCE_IMAGES)
            return False
        self._reference_images.append(image)
        return True

    def remove_reference_image(self, index: int) -> None:
        del self._reference_images[index]

    # ------------------------------------------------------------------
    # Drafting and research
    # ------------------------------------------------------------------

    async def draft_plan(self, concept: str, frame_count: int | None = None) -> Plan:
        """Draft title, constraints and frame descriptions, replacing the frame list."""
        if not concept.strip():
            raise ValueError("A concept is required to draft a storyboard.")
        count = frame_count or len(self.store.plan.frames) or DEFAULT_FRAME_COUNT

        data = await generate_project_plan(
            self.text_router, concept, count, self._reference_images, self.store.plan
        )
        raws = [str(f.get("raw", "")).strip() for f in data["frames"] if isinstance(f, dict)]
        if not raws:
            raise MalformedResponseError("Drafted plan has no frames")

        frames = [
            blank_frame(pos + 1, raw, self.config.default_image_model, self.config.default_video_model)
            for pos, raw in enumerate(raws)
        ]
        drafted = data.get("globalConstraints") or {}

        def _apply(plan: Plan) -> None:
            plan.title = data.get("title") or plan.title
            gc = plan.global_constraints
            if drafted.get("paletteNotes"):
                gc.palette_notes = str(drafted["paletteNotes"])
            if drafted.get("continuityRules"):
                gc.continuity_rules = [str(rule) for rule in drafted["continuityRules"]]
            known = {c.name.lower() for c in gc.characters}
            for char in drafted.get("characters") or []:
                name = str(char.get("name", "")).strip() if isinstance(char, dict) else ""
                if name and name.lower() not in known:
                    gc.characters.append(CharacterSpec(name=name, description=str(char.get("description", ""))))
                    known.add(name.lower())
            plan.frames = frames

        self.store.update(_apply)
        self.store.reset_transitions()
        self.progress_cb(f"  Drafted \"{self.store.plan.title}\" with {len(frames)} frames")
        return self.store.plan

    async def search_inspiration(self, concept: str) -> str:
        """DP briefing into the palette notes plus grounded reference images."""
        briefing, images = await asyncio.gather(
            search_visual_trends(self.text_router, concept),
            generate_reference_images(self.image_router, concept, 2),
        )

        def _apply(plan: Plan) -> None:
            plan.global_constraints.palette_notes = briefing

        self.store.update(_apply)
        added = sum(1 for img in images if self.add_reference_image(img))
        self.progress_cb(f"  🔎 Inspiration briefing ready, {added} reference image(s) added")
        return briefing

    # ------------------------------------------------------------------
    # Per-unit operations
    # ------------------------------------------------------------------

    async def render_frame(self, frame_index: int, force: bool = False) -> str | None:
        return await self.frames.render_frame_images(frame_index, force=force)

    async def render_frames(self, indices: list[int] | None = None) -> list[str | None]:
        """Render frames one after another. A capacity error stops the batch."""
        if indices is None:
            indices = [i for i, f in enumerate(self.store.plan.frames) if f.status is not Status.COMPLETED]
        urls = []
        for i in indices:
            self.progress_cb(f"  Rendering frame {i + 1}...")
            urls.append(await self.frames.render_frame_images(i))
        return urls

    async def render_frame_video(self, frame_index: int, force: bool = False) -> str | None:
        return await self.videos.render_frame_video(frame_index, force=force)

    async def render_transition(self, transition_index: int, force: bool = False) -> str | None:
        return await self.videos.render_transition(transition_index, force=force)

    async def generate_frame_prompt(self, frame_index: int) -> str:
        frame = self.store.frame(frame_index)
        prompt = await generate_director_prompt(
            self.text_router, frame, None, self.store.plan, "standalone"
        )
        self.store.update_frame(frame_index, lambda f: setattr(f, "video_prompt", prompt))
        return prompt

    async def generate_transition_prompt(self, transition_index: int) -> str:
        transition = self.store.transition(transition_index)
        plan = self.store.plan
        prompt = await generate_director_prompt(
            self.text_router,
            plan.frames[transition_index],
            plan.frames[transition_index + 1],
            plan,
            transition.type,
        )
        self.store.update_transition(transition_index, lambda t: setattr(t, "director_prompt", prompt))
        return prompt

    async def upload_image(self, frame_index: int, image: bytes | str) -> FrameImage:
        """Use a user-supplied image as the frame's master; its description becomes the scene text."""
        if self.store.frame(frame_index).status is Status.GENERATING:
            raise ValueError(f"Frame {frame_index + 1} is generating, try again when it finishes")
        if isinstance(image, str):
            image = split_data_uri(image)[1] if is_data_uri(image) else image.encode()
        url = await asyncio.to_thread(process_upload, image)

        try:
            description = await describe_image(self.text_router, url)
        except Exception as e:
            log.warning("Could not describe uploaded image: %s", e)
            description = ""

        upload = FrameImage(url=url, status=Status.COMPLETED, model_id=IMAGE_MODEL_UPLOAD, progress=100)

        def _apply(f: Frame) -> None:
            if description:
                f.raw = description
            f.images.append(upload.model_copy())
            f.selected_image_index = len(f.images) - 1
            if f.status is not Status.GENERATING:
                f.status = advance(EntityKind.FRAME, f.status, Status.COMPLETED)

        self.store.update_frame(frame_index, _apply)
        return upload

    async def edit_image(self, frame_index: int, image_id: str, instruction: str) -> str:
        """AI refinement of one candidate; the URL is replaced in place."""
        frame = self.store.frame(frame_index)
        pos = frame.find_image(image_id)
        if pos < 0:
            raise KeyError(f"Frame {frame_index + 1} has no image {image_id}")
        source = frame.images[pos]
        if source.status is not Status.COMPLETED or not source.url:
            raise ValueError(f"Image {image_id} is not completed")

        url = await edit_image(self.image_router, source.url, instruction)
        self.store.update_image(frame_index, image_id, lambda img: setattr(img, "url", url))
        return url

    def stitch(self, output_path: Path | None = None) -> Path:
        """Concatenate finished transitions, or frame clips when fewer than two transitions are done."""
        urls = [t.video_url for t in self.store.transitions
                if t.status is Status.COMPLETED and t.video_url]
        if len(urls) < 2:
            urls = [f.video_url for f in self.store.plan.frames
                    if f.video_status is Status.COMPLETED and f.video_url]
        return stitch_videos(urls, self.config.output_dir, output_path)

    # ------------------------------------------------------------------
    # Swarm conductor
    # ------------------------------------------------------------------

    async def run_full_production(self, concept: str = "", frame_count: int | None = None) -> ProductionStatus:
        """Draft if needed, image every frame, then synthesize every clip.

        Never raises for provider failures: the outcome is reported as a
        ``ProductionStatus``. Safe to call again after a pause; completed
        units are skipped and errored ones retried.
        """
        self.running = True
        self.progress_cb("🎬 Directing the Storyboard Swarm...")
        try:
            status = await self._produce(concept, frame_count)
        except Exception as e:
            log.error("Full production stopped: %s", e, exc_info=True)
            status = ProductionStatus.QUOTA if is_capacity_error(e) else ProductionStatus.PAUSED
        finally:
            self.running = False

        self.status = status
        icon = {ProductionStatus.COMPLETE: "✅", ProductionStatus.QUOTA: "⛔"}.get(status, "⏸")
        self.progress_cb(f"{icon} {status.value}")
        return status

    async def _produce(self, concept: str, frame_count: int | None) -> ProductionStatus:
        # Stage 1: drafting defines the frame list, so it runs alone
        if all(not f.raw.strip() for f in self.store.plan.frames):
            self.progress_cb("📝 Stage 1/3: Drafting storyboard...")
            await self.draft_plan(concept, frame_count)

        # Stage 2: fail-fast, a capacity error here stops before more quota is spent
        self.progress_cb("🎨 Stage 2/3: Capturing all keyframes simultaneously...")
        image_tasks = [
            asyncio.create_task(self.frames.render_frame_images(i))
            for i, f in enumerate(self.store.plan.frames)
            if f.status is not Status.COMPLETED
        ]
        await _gather_fail_fast(image_tasks)
        failed_frames = [f.index for f in self.store.plan.frames if f.status is Status.ERROR]
        if failed_frames:
            self.progress_cb(f"  ⚠ No usable image for frame(s) {failed_frames}")

        # Stage 3: fail-tolerant, every clip and transition in one batch
        self.progress_cb("🎥 Stage 3/3: Synthesizing visual motion swarm...")
        motion = [
            self.videos.render_frame_video(i)
            for i, f in enumerate(self.store.plan.frames)
            if f.video_status is not Status.COMPLETED
        ]
        motion += [
            self.videos.render_transition(i)
            for i, t in enumerate(self.store.transitions)
            if t.status is not Status.COMPLETED
        ]
        results = await asyncio.gather(*motion, return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        self.progress_cb(f"  {len(results) - len(errors)}/{len(results)} motion units finished")

        if any(is_capacity_error(e) for e in errors):
            return ProductionStatus.QUOTA
        if errors or failed_frames:
            return ProductionStatus.PAUSED
        return ProductionStatus.COMPLETE
