import asyncio

import pytest

from cineflow.config import DEFAULT_FRAME_VIDEO_PROMPT
from cineflow.errors import CapacityExhaustedError
from cineflow.jobs import TextRequest, VideoRequest
from cineflow.models import Plan, Status, Transition, blank_frame
from cineflow.orchestrator import VideoOrchestrator, needs_director_prompt
from cineflow.store import PlanStore

from conftest import ScriptedRouter, completed_frame


@pytest.fixture
def rendered_store():
    """Two frames with completed master images."""
    return PlanStore(Plan(frames=[completed_frame(1), completed_frame(2)]))


def _routers(video=None, text=None):
    video_router = ScriptedRouter(video or (lambda r: "https://video/clip.mp4"))
    text_router = ScriptedRouter(text or (lambda r: "Slow dolly in through the dust."))
    return video_router, text_router


@pytest.mark.asyncio
async def test_frame_video_happy_path(rendered_store):
    video, text = _routers()
    url = await VideoOrchestrator(rendered_store, video, text).render_frame_video(0)

    frame = rendered_store.frame(0)
    assert url == "https://video/clip.mp4"
    assert frame.video_url == url
    assert frame.video_status is Status.COMPLETED
    assert frame.video_progress == 100
    assert frame.video_prompt == "Slow dolly in through the dust."

    request = video.requests[0]
    assert isinstance(request, VideoRequest)
    assert request.start_image == "https://img/frame1.png"
    assert request.end_image is None
    assert request.prompt == "Slow dolly in through the dust."


@pytest.mark.asyncio
async def test_authored_prompt_is_kept(rendered_store):
    rendered_store.set_frame_fields(0, video_prompt="Whip pan to the horizon")
    video, text = _routers()
    await VideoOrchestrator(rendered_store, video, text).render_frame_video(0)
    assert text.requests == []
    assert video.requests[0].prompt == "Whip pan to the horizon"


@pytest.mark.asyncio
async def test_prompt_persists_when_synthesis_fails(rendered_store):
    video, text = _routers(video=lambda r: RuntimeError("synthesis exploded"))
    with pytest.raises(RuntimeError):
        await VideoOrchestrator(rendered_store, video, text).render_frame_video(0)

    frame = rendered_store.frame(0)
    assert frame.video_status is Status.ERROR
    assert frame.video_prompt == "Slow dolly in through the dust."
    assert frame.video_url is None


@pytest.mark.asyncio
async def test_capacity_error_propagates(rendered_store):
    video, text = _routers(video=lambda r: CapacityExhaustedError("veo"))
    with pytest.raises(CapacityExhaustedError):
        await VideoOrchestrator(rendered_store, video, text).render_frame_video(1)
    assert rendered_store.frame(1).video_status is Status.ERROR


@pytest.mark.asyncio
async def test_no_master_image_is_skipped():
    store = PlanStore(Plan(frames=[blank_frame(1, "Empty")]))
    video, text = _routers()
    assert await VideoOrchestrator(store, video, text).render_frame_video(0) is None
    assert store.frame(0).video_status is Status.IDLE
    assert video.requests == [] and text.requests == []


@pytest.mark.asyncio
async def test_completed_video_short_circuits(rendered_store):
    rendered_store.set_frame_fields(0, video_url="https://video/old.mp4", video_status=Status.COMPLETED)
    video, text = _routers()
    assert await VideoOrchestrator(rendered_store, video, text).render_frame_video(0) == "https://video/old.mp4"
    assert video.requests == []


@pytest.mark.asyncio
async def test_force_rerenders_completed_video(rendered_store):
    rendered_store.set_frame_fields(0, video_url="https://video/old.mp4", video_status=Status.COMPLETED)
    video, text = _routers()
    url = await VideoOrchestrator(rendered_store, video, text).render_frame_video(0, force=True)
    assert url == "https://video/clip.mp4"
    assert rendered_store.frame(0).video_status is Status.COMPLETED


@pytest.mark.asyncio
async def test_late_progress_does_not_resurrect(rendered_store):
    video, text = _routers()
    await VideoOrchestrator(rendered_store, video, text).render_frame_video(0)

    on_progress = video.progress_callbacks[0]
    on_progress(99)

    frame = rendered_store.frame(0)
    assert frame.video_status is Status.COMPLETED
    assert frame.video_progress == 100


@pytest.mark.asyncio
async def test_progress_written_while_generating(rendered_store):
    seen = []
    rendered_store.subscribe(lambda plan, t: seen.append(plan.frames[0].video_progress))
    video, text = _routers()
    await VideoOrchestrator(rendered_store, video, text).render_frame_video(0)
    # 0 at start, 5 before submission, 50 from the router, 100 at the end
    assert 5 in seen and 50 in seen
    assert seen[-1] == 100


@pytest.mark.asyncio
async def test_bridge_transition(rendered_store):
    video, text = _routers(text=lambda r: "Crane up and over the ridge.")
    url = await VideoOrchestrator(rendered_store, video, text).render_transition(0)

    transition = rendered_store.transition(0)
    assert url == "https://video/clip.mp4"
    assert transition.status is Status.COMPLETED
    assert transition.progress == 100
    assert transition.director_prompt == "Crane up and over the ridge."

    prompt_request = text.requests[0]
    assert isinstance(prompt_request, TextRequest)
    assert "Scene A: Scene 1" in prompt_request.prompt
    assert "Scene B: Scene 2" in prompt_request.prompt

    request = video.requests[0]
    assert request.start_image == "https://img/frame1.png"
    assert request.end_image == "https://img/frame2.png"


@pytest.mark.asyncio
async def test_bridge_needs_both_images():
    store = PlanStore(Plan(frames=[completed_frame(1), blank_frame(2, "Not rendered")]))
    video, text = _routers()
    assert await VideoOrchestrator(store, video, text).render_transition(0) is None
    assert store.transition(0).status is Status.IDLE
    assert video.requests == []


@pytest.mark.asyncio
async def test_standalone_transition_needs_only_start():
    store = PlanStore(
        Plan(frames=[completed_frame(1), blank_frame(2, "Not rendered")]),
        [Transition(from_index=1, to_index=2, type="standalone")],
    )
    video, text = _routers()
    url = await VideoOrchestrator(store, video, text).render_transition(0)
    assert url == "https://video/clip.mp4"
    assert video.requests[0].end_image is None


@pytest.mark.asyncio
async def test_transition_failure_marks_error_and_retries(rendered_store):
    video, text = _routers(video=lambda r: RuntimeError("boom"))
    orchestrator = VideoOrchestrator(rendered_store, video, text)
    with pytest.raises(RuntimeError):
        await orchestrator.render_transition(0)
    assert rendered_store.transition(0).status is Status.ERROR

    video.handler = lambda r: "https://video/retry.mp4"
    assert await orchestrator.render_transition(0) == "https://video/retry.mp4"
    # The synthesized prompt was kept, so it is not regenerated
    assert len(text.requests) == 1


@pytest.mark.asyncio
async def test_transition_busy_is_skipped(rendered_store):
    rendered_store.set_transition_fields(0, status=Status.GENERATING)
    video, text = _routers()
    assert await VideoOrchestrator(rendered_store, video, text).render_transition(0) is None


@pytest.mark.asyncio
async def test_cancelled_video_marks_error(rendered_store):
    video, text = _routers(video=lambda r: asyncio.Event().wait())
    task = asyncio.create_task(VideoOrchestrator(rendered_store, video, text).render_frame_video(0))
    while not video.requests:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert rendered_store.frame(0).video_status is Status.ERROR


def test_needs_director_prompt():
    assert needs_director_prompt("", DEFAULT_FRAME_VIDEO_PROMPT)
    assert needs_director_prompt("   ", DEFAULT_FRAME_VIDEO_PROMPT)
    assert needs_director_prompt(DEFAULT_FRAME_VIDEO_PROMPT, DEFAULT_FRAME_VIDEO_PROMPT)
    assert not needs_director_prompt("Orbit the jeep", DEFAULT_FRAME_VIDEO_PROMPT)


def _gated_video_router():
    """Each clip waits on its own gate, keyed by the start image."""
    gates = {}

    async def _handle(request):
        gate = gates.setdefault(request.start_image, asyncio.Event())
        await gate.wait()
        return f"clip-of-{request.start_image}"

    def release(start_image):
        gates.setdefault(start_image, asyncio.Event()).set()

    return ScriptedRouter(_handle), release


@pytest.mark.asyncio
async def test_clip_dropped_when_frame_removed(rendered_store):
    video, release = _gated_video_router()
    _, text = _routers()
    orchestrator = VideoOrchestrator(rendered_store, video, text)
    first = asyncio.create_task(orchestrator.render_frame_video(0))
    second = asyncio.create_task(orchestrator.render_frame_video(1))
    while len(video.requests) < 2:
        await asyncio.sleep(0)

    rendered_store.remove_frame(0)
    release("https://img/frame1.png")
    assert await first is None

    survivor = rendered_store.frame(0)
    assert survivor.raw == "Scene 2"
    assert survivor.video_status is Status.GENERATING
    assert survivor.video_url is None

    release("https://img/frame2.png")
    assert await second == "clip-of-https://img/frame2.png"
    assert rendered_store.frame(0).video_url == "clip-of-https://img/frame2.png"
    assert rendered_store.frame(0).video_status is Status.COMPLETED


@pytest.mark.asyncio
async def test_clip_follows_reordered_frame(rendered_store):
    video, release = _gated_video_router()
    _, text = _routers()
    task = asyncio.create_task(VideoOrchestrator(rendered_store, video, text).render_frame_video(0))
    while not video.requests:
        await asyncio.sleep(0)

    rendered_store.set_frames(list(reversed(rendered_store.plan.frames)))
    release("https://img/frame1.png")
    await task

    moved, other = rendered_store.frame(1), rendered_store.frame(0)
    assert moved.raw == "Scene 1"
    assert moved.video_url == "clip-of-https://img/frame1.png"
    assert moved.video_status is Status.COMPLETED
    assert moved.video_prompt == "Slow dolly in through the dust."
    assert other.video_url is None
    assert other.video_status is Status.IDLE
