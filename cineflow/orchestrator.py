"""Per-unit orchestration: keyframe candidates for a frame, clips for frames and transitions.

Both orchestrators only ever write through the ``PlanStore``; nothing they
read at task start is mutated later. Image writes locate their target by
the placeholder's identity token and frame clip writes by the master
image's, so frames added, removed or reordered while a render is in
flight never receive another frame's results.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .config import (
    DEFAULT_FRAME_VIDEO_PROMPT,
    DEFAULT_TRANSITION_PROMPT,
    IMAGE_PROGRESS_SEED,
    IMAGE_TICK_CEILING,
    IMAGE_TICK_INTERVAL,
    IMAGE_TICK_STEP,
)
from .director import generate_director_prompt
from .errors import is_capacity_error
from .fallback import FallbackRouter
from .imagegen import generate_keyframe_image
from .models import EntityKind, Frame, FrameImage, Plan, Status, Transition, advance
from .store import PlanStore
from .videogen import generate_transition_video

log = logging.getLogger(__name__)


def image_prompt(plan: Plan, frame: Frame) -> str:
    return f"STYLE: {plan.global_constraints.palette_notes}\n\nSCENE: {frame.raw}"


def needs_director_prompt(prompt: str | None, placeholder: str) -> bool:
    """True when nobody has authored a motion prompt yet."""
    text = (prompt or "").strip()
    return not text or text == placeholder


def locate_frame(store: PlanStore, image_ids: list[str]) -> int:
    """Current position of the frame holding any of these images, or -1."""
    for pos, frame in enumerate(store.plan.frames):
        if any(frame.find_image(image_id) >= 0 for image_id in image_ids):
            return pos
    return -1


class FrameOrchestrator:
    """Drives candidate image generation for one frame at a time."""

    def __init__(
        self,
        store: PlanStore,
        image_router: FallbackRouter,
        reference_images: Callable[[], list[str]] = list,
        tick_interval: float = IMAGE_TICK_INTERVAL,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.image_router = image_router
        self._reference_images = reference_images
        self.tick_interval = tick_interval
        self._sleep = sleep

    def _locate(self, image_ids: list[str]) -> int:
        return locate_frame(self.store, image_ids)

    async def render_frame_images(self, frame_index: int, force: bool = False) -> str | None:
        """Render ``candidate_count`` candidates for one frame.

        Returns the master image URL, or None when the frame is busy, gone or
        every candidate failed. With ``force`` a completed frame gets a fresh
        batch appended instead of short-circuiting.
        """
        try:
            frame = self.store.frame(frame_index)
        except IndexError:
            log.warning("Frame %d does not exist, skipping image render", frame_index + 1)
            return None

        if frame.status is Status.GENERATING:
            log.info("Frame %d already generating, skipping", frame.index)
            return None
        if frame.status is Status.COMPLETED and frame.images and not force:
            master = frame.master_image
            return master.url if master else None

        count = frame.candidate_count
        placeholders = [
            FrameImage(status=Status.GENERATING, progress=IMAGE_PROGRESS_SEED, model_id=frame.image_model)
            for _ in range(count)
        ]
        image_ids = [p.id for p in placeholders]

        def _start(f: Frame) -> None:
            f.status = advance(EntityKind.FRAME, f.status, Status.GENERATING)
            f.images.extend(p.model_copy() for p in placeholders)

        self.store.update_frame(frame_index, _start)
        log.info("Frame %d: rendering %d candidate(s) with %s", frame.index, count, frame.image_model)

        plan = self.store.plan
        prompt = image_prompt(plan, frame)
        refs = self._reference_images()
        ticker = asyncio.create_task(self._tick(image_ids))
        try:
            results = await asyncio.gather(
                *(
                    generate_keyframe_image(
                        self.image_router, prompt, plan.aspect_ratio, frame.image_model,
                        candidate_index=k, total_candidates=count, reference_images=refs,
                    )
                    for k in range(count)
                ),
                return_exceptions=True,
            )
        except asyncio.CancelledError:
            self._abandon(image_ids)
            raise
        finally:
            ticker.cancel()
            await asyncio.gather(ticker, return_exceptions=True)

        return self._reconcile(frame.index, image_ids, results)

    async def _tick(self, image_ids: list[str]) -> None:
        # Image providers report no progress; nudge placeholders so the UI moves
        wanted = set(image_ids)

        def _nudge(f: Frame) -> None:
            for img in f.images:
                if img.id in wanted and img.status is Status.GENERATING:
                    img.progress = min(IMAGE_TICK_CEILING, img.progress + IMAGE_TICK_STEP)

        while True:
            await self._sleep(self.tick_interval)
            pos = self._locate(image_ids)
            if pos < 0:
                return
            self.store.update_frame(pos, _nudge)

    def _reconcile(self, label: int, image_ids: list[str], results: list) -> str | None:
        capacity_error: BaseException | None = None
        for k, result in enumerate(results):
            if isinstance(result, BaseException):
                log.error("Frame %d candidate %d/%d failed: %s", label, k + 1, len(results), result)
                if capacity_error is None and is_capacity_error(result):
                    capacity_error = result

        pos = self._locate(image_ids)
        if pos < 0:
            log.warning("Frame %d was removed while rendering, dropping results", label)
        else:
            def _settle(f: Frame) -> None:
                last_ok = None
                for image_id, result in zip(image_ids, results):
                    at = f.find_image(image_id)
                    if at < 0 or f.images[at].status is not Status.GENERATING:
                        continue
                    img = f.images[at]
                    if isinstance(result, BaseException):
                        img.status = advance(EntityKind.IMAGE, img.status, Status.ERROR)
                    else:
                        img.url = result
                        img.progress = 100
                        img.status = advance(EntityKind.IMAGE, img.status, Status.COMPLETED)
                        last_ok = at
                if last_ok is not None:
                    f.selected_image_index = last_ok
                if f.status is Status.GENERATING:
                    target = Status.COMPLETED if last_ok is not None else Status.ERROR
                    f.status = advance(EntityKind.FRAME, f.status, target)

            self.store.update_frame(pos, _settle)

        if capacity_error is not None:
            raise capacity_error
        if pos < 0:
            return None
        frame = self.store.frame(pos)
        master = frame.master_image
        if frame.status is Status.COMPLETED and master and master.status is Status.COMPLETED:
            return master.url
        return None

    def _abandon(self, image_ids: list[str]) -> None:
        pos = self._locate(image_ids)
        if pos < 0:
            return
        wanted = set(image_ids)

        def _cancel(f: Frame) -> None:
            for img in f.images:
                if img.id in wanted and img.status is Status.GENERATING:
                    img.status = Status.ERROR
            if f.status is Status.GENERATING:
                f.status = Status.ERROR

        self.store.update_frame(pos, _cancel)
        log.warning("Frame %d render cancelled", pos + 1)


class VideoOrchestrator:
    """Director prompt (when missing) then video synthesis, for a frame or a transition."""

    def __init__(self, store: PlanStore, video_router: FallbackRouter, text_router: FallbackRouter) -> None:
        self.store = store
        self.video_router = video_router
        self.text_router = text_router

    # -- frame clips ---------------------------------------------------------

    async def render_frame_video(self, frame_index: int, force: bool = False) -> str | None:
        try:
            frame = self.store.frame(frame_index)
        except IndexError:
            log.warning("Frame %d does not exist, skipping video", frame_index + 1)
            return None

        if frame.video_status is Status.GENERATING:
            log.info("Frame %d video already generating, skipping", frame.index)
            return None
        if frame.video_status is Status.COMPLETED and frame.video_url and not force:
            return frame.video_url

        master = frame.master_image
        if not master or master.status is not Status.COMPLETED or not master.url:
            log.warning("Frame %d has no completed master image, skipping video", frame.index)
            return None

        # The master's identity token follows the frame if it moves
        anchor = [master.id]

        def _write(mutate: Callable[[Frame], None]) -> bool:
            pos = locate_frame(self.store, anchor)
            if pos < 0:
                log.warning("Frame %d was removed while its clip rendered, dropping write", frame.index)
                return False
            return self.store.update_frame(pos, mutate)

        def _start(f: Frame) -> None:
            if f.video_status is Status.COMPLETED:
                f.video_status = advance(EntityKind.VIDEO, f.video_status, Status.IDLE)
            f.video_status = advance(EntityKind.VIDEO, f.video_status, Status.GENERATING)
            f.video_progress = 0

        self.store.update_frame(frame_index, _start)

        def _progress(value: float) -> None:
            def _apply(f: Frame) -> None:
                if f.video_status is Status.GENERATING:
                    f.video_progress = value

            pos = locate_frame(self.store, anchor)
            if pos >= 0 and self.store.frame(pos).video_status is Status.GENERATING:
                self.store.update_frame(pos, _apply)

        try:
            prompt = frame.video_prompt
            if needs_director_prompt(prompt, DEFAULT_FRAME_VIDEO_PROMPT):
                prompt = await generate_director_prompt(
                    self.text_router, frame, None, self.store.plan, "standalone"
                )
                _write(lambda f: setattr(f, "video_prompt", prompt))

            url = await generate_transition_video(
                self.video_router,
                prompt,
                master.url,
                aspect_ratio=self.store.plan.aspect_ratio,
                model=frame.video_model,
                transition_type="standalone",
                on_progress=_progress,
            )
        except (Exception, asyncio.CancelledError) as e:
            log.error("Frame %d video failed: %s", frame.index, e)
            _write(_fail_frame_video)
            raise

        def _finish(f: Frame) -> None:
            if f.video_status is not Status.GENERATING:
                return
            f.video_url = url
            f.video_progress = 100
            f.video_status = advance(EntityKind.VIDEO, f.video_status, Status.COMPLETED)

        if not _write(_finish):
            return None
        return url

    # -- transitions -----------------------------------------------------------

    async def render_transition(self, transition_index: int, force: bool = False) -> str | None:
        try:
            transition = self.store.transition(transition_index)
        except IndexError:
            log.warning("Transition %d does not exist, skipping", transition_index + 1)
            return None

        if transition.status is Status.GENERATING:
            log.info("Transition %d already generating, skipping", transition_index + 1)
            return None
        if transition.status is Status.COMPLETED and transition.video_url and not force:
            return transition.video_url

        plan = self.store.plan
        start_frame = plan.frames[transition_index]
        end_frame = plan.frames[transition_index + 1]
        bridge = transition.type == "bridge"

        start = _completed_master(start_frame)
        end = _completed_master(end_frame)
        if start is None or (bridge and end is None):
            log.warning("Transition %d: source image(s) not ready, skipping", transition_index + 1)
            return None

        def _start(t: Transition) -> None:
            if t.status is Status.COMPLETED:
                t.status = advance(EntityKind.VIDEO, t.status, Status.IDLE)
            t.status = advance(EntityKind.VIDEO, t.status, Status.GENERATING)
            t.progress = 0

        self.store.update_transition(transition_index, _start)

        def _progress(value: float) -> None:
            if self.store.transition(transition_index).status is not Status.GENERATING:
                return

            def _apply(t: Transition) -> None:
                if t.status is Status.GENERATING:
                    t.progress = value

            self.store.update_transition(transition_index, _apply)

        try:
            prompt = transition.director_prompt
            if needs_director_prompt(prompt, DEFAULT_TRANSITION_PROMPT):
                prompt = await generate_director_prompt(
                    self.text_router, start_frame, end_frame, plan, transition.type
                )
                self.store.update_transition(
                    transition_index, lambda t: setattr(t, "director_prompt", prompt)
                )

            url = await generate_transition_video(
                self.video_router,
                prompt,
                start,
                end if bridge else None,
                aspect_ratio=plan.aspect_ratio,
                model=transition.model_id,
                transition_type=transition.type,
                on_progress=_progress,
            )
        except (Exception, asyncio.CancelledError) as e:
            log.error("Transition %d failed: %s", transition_index + 1, e)
            self.store.update_transition(transition_index, _fail_transition)
            raise

        def _finish(t: Transition) -> None:
            if t.status is not Status.GENERATING:
                return
            t.video_url = url
            t.progress = 100
            t.status = advance(EntityKind.VIDEO, t.status, Status.COMPLETED)

        self.store.update_transition(transition_index, _finish)
        return url


def _completed_master(frame: Frame) -> str | None:
    master = frame.master_image
    if master and master.status is Status.COMPLETED and master.url:
        return master.url
    return None


def _fail_frame_video(f: Frame) -> None:
    if f.video_status is Status.GENERATING:
        f.video_status = advance(EntityKind.VIDEO, f.video_status, Status.ERROR)


def _fail_transition(t: Transition) -> None:
    if t.status is Status.GENERATING:
        t.status = advance(EntityKind.VIDEO, t.status, Status.ERROR)
