"""Shared fakes: scripted routers and job clients, a virtual clock."""
from __future__ import annotations

import inspect

import pytest

from cineflow.config import PollPolicy
from cineflow.jobs import JobHandle, PollStatus
from cineflow.models import Frame, FrameImage, Plan, Status, blank_frame
from cineflow.store import PlanStore

FAST_POLICY = PollPolicy(interval=1.0, max_interval=4.0, backoff_step=1.0, timeout=60.0,
                         max_consecutive_errors=5)


class FakeClock:
    """``clock`` and ``sleep`` pair: sleeping advances virtual time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeClient:
    """JobClient whose submit/poll outcomes are scripted in order.

    An outcome that is an exception is raised; anything else is returned.
    The last poll outcome repeats forever.
    """

    def __init__(self, name="fake", submits=(), polls=(), policy=FAST_POLICY):
        self.name = name
        self.poll_policy = policy
        self._submits = list(submits)
        self._polls = list(polls)
        self.requests = []
        self.poll_count = 0

    async def submit(self, request):
        self.requests.append(request)
        outcome = self._submits.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def poll(self, handle: JobHandle) -> PollStatus:
        self.poll_count += 1
        outcome = self._polls.pop(0) if len(self._polls) > 1 else self._polls[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class ScriptedRouter:
    """Stands in for a FallbackRouter: ``handler(request)`` decides each answer.

    The handler may be sync or async, and may return an exception instance
    to have it raised.
    """

    def __init__(self, handler=None, log=None):
        self.handler = handler or (lambda request: "ok")
        self.requests = []
        self.progress_callbacks = []
        self.log = log

    async def run(self, request, on_progress=None):
        self.requests.append(request)
        if self.log is not None:
            self.log.append(type(request).__name__)
        self.progress_callbacks.append(on_progress)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        if on_progress:
            on_progress(50)
        return result


def completed_frame(index: int, url: str = "", raw: str = "") -> Frame:
    frame = blank_frame(index, raw or f"Scene {index}")
    frame.images = [FrameImage(url=url or f"https://img/frame{index}.png", status=Status.COMPLETED, progress=100)]
    frame.status = Status.COMPLETED
    return frame


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    """Three described frames, nothing rendered."""
    plan = Plan(frames=[blank_frame(i, f"Scene {i}") for i in (1, 2, 3)])
    return PlanStore(plan)
