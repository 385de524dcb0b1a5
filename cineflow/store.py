"""Authoritative holder for the production plan and its transitions.

Async tasks must never mutate a plan object they captured when they
started: by the time their callback fires, other callbacks may have
replaced it. Instead every write goes through ``PlanStore.update`` (or one
of its narrower helpers), which reads the latest value, hands a private
copy to the caller's transform and writes the result back. Writes never
await, so on a single event loop each one is atomic with respect to every
other callback.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable

from .config import MAX_CANDIDATES, MIN_CANDIDATES
from .models import Frame, FrameImage, Plan, Transition, blank_frame, default_transition

log = logging.getLogger(__name__)

Listener = Callable[[Plan, list[Transition]], None]


def resync_transitions(transitions: list[Transition], frame_count: int) -> list[Transition]:
    """Truncate or extend ``transitions`` to ``max(0, frame_count - 1)`` entries.

    Entries at surviving positions are kept as they are.
    """
    wanted = max(0, frame_count - 1)
    synced = list(transitions[:wanted])
    for position in range(len(synced), wanted):
        synced.append(default_transition(position))
    return synced


class PlanStore:
    def __init__(self, plan: Plan | None = None, transitions: Iterable[Transition] = ()) -> None:
        self._plan = plan or Plan()
        self._transitions = resync_transitions(list(transitions), len(self._plan.frames))
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def plan(self) -> Plan:
        """Latest plan. Treat as read-only; write through ``update``."""
        return self._plan

    @property
    def transitions(self) -> list[Transition]:
        return list(self._transitions)

    def frame(self, frame_index: int) -> Frame:
        return self._plan.frames[frame_index]

    def transition(self, transition_index: int) -> Transition:
        return self._transitions[transition_index]

    def snapshot(self) -> dict:
        return {
            "plan": self._plan.model_dump(mode="json"),
            "transitions": [t.model_dump(mode="json") for t in self._transitions],
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update(self, transform: Callable[[Plan], Plan | None]) -> Plan:
        """Apply ``transform`` to a copy of the latest plan and store the result."""
        draft = self._plan.model_copy(deep=True)
        result = transform(draft)
        self._plan = result if result is not None else draft
        if len(self._transitions) != max(0, len(self._plan.frames) - 1):
            self._transitions = resync_transitions(self._transitions, len(self._plan.frames))
        self._notify()
        return self._plan

    def update_frame(self, frame_index: int, mutate: Callable[[Frame], None]) -> bool:
        """Mutate one frame of the latest plan. False if the frame no longer exists."""
        if not 0 <= frame_index < len(self._plan.frames):
            log.warning("Dropping write to missing frame %d", frame_index)
            return False

        def _apply(plan: Plan) -> None:
            mutate(plan.frames[frame_index])

        self.update(_apply)
        return True

    def update_image(
        self,
        frame_index: int,
        image_id: str,
        mutate: Callable[[FrameImage], None],
    ) -> bool:
        """Mutate one candidate image, located by its identity token."""
        if not 0 <= frame_index < len(self._plan.frames):
            return False
        if self._plan.frames[frame_index].find_image(image_id) < 0:
            return False

        def _apply(frame: Frame) -> None:
            mutate(frame.images[frame.find_image(image_id)])

        return self.update_frame(frame_index, _apply)

    def update_transition(self, transition_index: int, mutate: Callable[[Transition], None]) -> bool:
        if not 0 <= transition_index < len(self._transitions):
            log.warning("Dropping write to missing transition %d", transition_index)
            return False
        draft = [t.model_copy(deep=True) for t in self._transitions]
        mutate(draft[transition_index])
        self._transitions = draft
        self._notify()
        return True

    # ------------------------------------------------------------------
    # Editing helpers
    # ------------------------------------------------------------------

    def set_frames(self, frames: list[Frame]) -> None:
        def _apply(plan: Plan) -> None:
            plan.frames = [f.model_copy(deep=True, update={"index": pos + 1}) for pos, f in enumerate(frames)]

        self.update(_apply)

    def reset_transitions(self) -> None:
        """Replace every transition with a fresh default entry."""
        self._transitions = resync_transitions([], len(self._plan.frames))
        self._notify()

    def add_frame(self, raw: str = "") -> int:
        """Append a blank frame; returns its 0-based position."""
        def _apply(plan: Plan) -> None:
            plan.frames.append(blank_frame(len(plan.frames) + 1, raw))

        self.update(_apply)
        return len(self._plan.frames) - 1

    def remove_frame(self, frame_index: int) -> None:
        def _apply(plan: Plan) -> None:
            del plan.frames[frame_index]
            for pos, frame in enumerate(plan.frames):
                frame.index = pos + 1

        self.update(_apply)

    def select_image(self, frame_index: int, image_index: int) -> None:
        frame = self.frame(frame_index)
        if not 0 <= image_index < len(frame.images):
            raise IndexError(f"Frame {frame_index + 1} has no image {image_index}")
        self.update_frame(frame_index, lambda f: setattr(f, "selected_image_index", image_index))

    def set_candidate_count(self, frame_index: int, count: int) -> None:
        if not MIN_CANDIDATES <= count <= MAX_CANDIDATES:
            raise ValueError(f"Candidate count must be {MIN_CANDIDATES}-{MAX_CANDIDATES}, got {count}")
        self.update_frame(frame_index, lambda f: setattr(f, "candidate_count", count))

    def set_frame_fields(self, frame_index: int, **fields) -> None:
        current = self.frame(frame_index)
        # Run the values through validation before touching the store
        checked = Frame.model_validate({**current.model_dump(), **fields})
        self.update_frame(frame_index, lambda f: _copy_fields(checked, f, fields))

    def set_transition_fields(self, transition_index: int, **fields) -> None:
        current = self.transition(transition_index)
        checked = Transition.model_validate({**current.model_dump(), **fields})
        self.update_transition(transition_index, lambda t: _copy_fields(checked, t, fields))

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._plan, self.transitions)
            except Exception:
                log.exception("Plan listener failed")


def _copy_fields(source, target, names) -> None:
    for name in names:
        setattr(target, name, getattr(source, name))
