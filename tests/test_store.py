import logging

import pytest
from pydantic import ValidationError

from cineflow.models import FrameImage, Plan, Status, Transition, blank_frame
from cineflow.store import PlanStore, resync_transitions


def _check_invariant(store: PlanStore) -> None:
    assert len(store.transitions) == max(0, len(store.plan.frames) - 1)


def test_resync_extends_and_truncates():
    kept = Transition(from_index=1, to_index=2, status=Status.COMPLETED, video_url="https://v/1.mp4")
    grown = resync_transitions([kept], 4)
    assert len(grown) == 3
    assert grown[0] is kept
    assert grown[2].from_index == 3 and grown[2].to_index == 4

    assert resync_transitions(grown, 2) == [kept]
    assert resync_transitions(grown, 0) == []
    assert resync_transitions([], 1) == []


def test_transition_invariant_over_edits():
    store = PlanStore()
    _check_invariant(store)
    for raw in ("a", "b", "c", "d"):
        store.add_frame(raw)
        _check_invariant(store)

    store.set_transition_fields(0, type="standalone", director_prompt="Push in")
    store.remove_frame(3)
    _check_invariant(store)
    store.remove_frame(1)
    _check_invariant(store)
    store.add_frame("e")
    _check_invariant(store)

    # Position 0 survived every edit untouched
    assert store.transition(0).type == "standalone"
    assert store.transition(0).director_prompt == "Push in"
    assert [f.index for f in store.plan.frames] == [1, 2, 3]
    assert [f.raw for f in store.plan.frames] == ["a", "c", "e"]

    while store.plan.frames:
        store.remove_frame(0)
        _check_invariant(store)


def test_update_applies_to_latest_value():
    store = PlanStore(Plan(frames=[blank_frame(1, "old")]))
    captured = store.plan

    store.update_frame(0, lambda f: setattr(f, "raw", "new"))
    # A second writer that started from the stale snapshot must not clobber the first
    store.update_frame(0, lambda f: setattr(f, "candidate_count", 3))

    assert store.frame(0).raw == "new"
    assert store.frame(0).candidate_count == 3
    # The captured object itself was never mutated
    assert captured.frames[0].raw == "old"


def test_update_writes_to_missing_targets_are_dropped(store):
    assert store.update_frame(7, lambda f: setattr(f, "raw", "x")) is False
    assert store.update_transition(9, lambda t: setattr(t, "progress", 10)) is False
    assert store.update_image(0, "no-such-id", lambda img: setattr(img, "url", "x")) is False


def test_set_frames_renumbers(store):
    reversed_frames = list(reversed(store.plan.frames))
    store.set_frames(reversed_frames)
    assert [f.index for f in store.plan.frames] == [1, 2, 3]
    assert [f.raw for f in store.plan.frames] == ["Scene 3", "Scene 2", "Scene 1"]


def test_set_frames_takes_private_copies(store):
    frames = [blank_frame(1, "Mine"), blank_frame(2, "Yours")]
    store.set_frames(frames)

    frames[0].images.append(FrameImage(url="https://img/sneaky.png", status=Status.COMPLETED))
    frames[1].raw = "Changed behind the store's back"

    assert store.frame(0).images == []
    assert store.frame(1).raw == "Yours"


def test_select_image_bounds(store):
    with pytest.raises(IndexError):
        store.select_image(0, 0)


def test_set_candidate_count(store):
    store.set_candidate_count(1, 5)
    assert store.frame(1).candidate_count == 5
    for bad in (0, 6):
        with pytest.raises(ValueError):
            store.set_candidate_count(1, bad)


def test_set_fields_validated_before_write(store):
    with pytest.raises(ValidationError):
        store.set_frame_fields(0, video_progress=400)
    assert store.frame(0).video_progress == 0

    store.set_frame_fields(0, raw="Dust storm", video_model="veo-3.1-generate-preview")
    assert store.frame(0).raw == "Dust storm"
    assert store.frame(0).video_model == "veo-3.1-generate-preview"


def test_reset_transitions(store):
    store.set_transition_fields(1, status=Status.ERROR)
    store.reset_transitions()
    assert [t.status for t in store.transitions] == [Status.IDLE, Status.IDLE]


def test_subscribe_and_unsubscribe(store):
    seen = []
    unsubscribe = store.subscribe(lambda plan, transitions: seen.append(len(transitions)))
    store.add_frame("d")
    assert seen == [3]

    unsubscribe()
    store.add_frame("e")
    assert seen == [3]


def test_failing_listener_does_not_break_writes(store, caplog):
    def _boom(plan, transitions):
        raise RuntimeError("listener bug")

    store.subscribe(_boom)
    with caplog.at_level(logging.ERROR, logger="cineflow.store"):
        store.update_frame(0, lambda f: setattr(f, "raw", "still written"))

    assert store.frame(0).raw == "still written"
    assert "Plan listener failed" in caplog.text


def test_snapshot_is_json_ready(store):
    snap = store.snapshot()
    assert snap["plan"]["frames"][0]["status"] == "idle"
    assert len(snap["transitions"]) == 2
