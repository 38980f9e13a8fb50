from datetime import timedelta

import pytest

from atelier import status
from atelier.status import Action, InvalidTransition, TaskStatus, is_stale, plan
from atelier.utils import to_iso

from conftest import T0


def _sub(st, minutes_ago=None, **extra):
    sub = {"status": st, **extra}
    if minutes_ago is not None:
        sub["started_at"] = to_iso(T0 - timedelta(minutes=minutes_ago))
    return sub


def test_staleness_threshold():
    assert is_stale("in_progress", to_iso(T0 - timedelta(minutes=11)), T0)
    assert not is_stale("in_progress", to_iso(T0 - timedelta(minutes=9)), T0)


def test_only_in_progress_can_be_stale():
    old = to_iso(T0 - timedelta(hours=5))
    for st in ("wanted", "completed", "error", None):
        assert not is_stale(st, old, T0)


def test_in_progress_without_start_is_stale():
    assert is_stale("in_progress", None, T0)
    assert is_stale("in_progress", "not a date", T0)


def test_custom_threshold():
    started = to_iso(T0 - timedelta(seconds=90))
    assert is_stale("in_progress", started, T0, timedelta(seconds=60))
    assert not is_stale("in_progress", started, T0, timedelta(seconds=120))


def test_naive_and_epoch_timestamps():
    assert is_stale("in_progress", (T0 - timedelta(minutes=20)).replace(tzinfo=None).isoformat(), T0)
    assert not is_stale("in_progress", (T0 - timedelta(minutes=1)).timestamp(), T0)


def test_plan():
    assert plan(None, T0) is Action.NONE
    assert plan({}, T0) is Action.NONE
    assert plan(_sub("completed"), T0) is Action.NONE
    assert plan(_sub("error"), T0) is Action.NONE
    assert plan(_sub("wanted"), T0) is Action.SUBMIT
    assert plan(_sub("in_progress", 2, prediction_url="u"), T0) is Action.POLL
    assert plan(_sub("in_progress", 2), T0) is Action.BUSY
    # a live handle does not protect a job past the threshold
    assert plan(_sub("in_progress", 11, prediction_url="u"), T0) is Action.REQUEUE


def test_legacy_spellings():
    assert status.coerce_status("needed") is TaskStatus.WANTED
    assert status.coerce_status("IN_PROGRESS") is TaskStatus.IN_PROGRESS
    assert status.coerce_status("") is TaskStatus.ABSENT
    assert status.coerce_status("something else") is TaskStatus.ABSENT


def test_enqueue_from_absent_completed_and_error():
    for sub in (None, _sub("completed", completed_at="x"), _sub("error", error="boom")):
        upd = status.wanted(sub, T0)
        assert upd["status"] == "wanted"
        assert upd["started_at"] is None
        assert upd["attempts"] == 0
        assert "completed_at" not in upd


def test_enqueue_in_progress_needs_force():
    sub = _sub("in_progress", 1)
    with pytest.raises(InvalidTransition):
        status.wanted(sub, T0)
    assert status.wanted(sub, T0, force=True)["status"] == "wanted"


def test_in_progress_sets_start_and_lease():
    upd = status.in_progress(_sub("wanted"), T0, "run-a")
    assert upd["status"] == "in_progress"
    assert upd["started_at"] == to_iso(T0)
    assert upd["lease_owner"] == "run-a"


def test_illegal_transitions():
    with pytest.raises(InvalidTransition):
        status.in_progress(_sub("completed"), T0, "r")
    with pytest.raises(InvalidTransition):
        status.completed(_sub("wanted"), T0)
    with pytest.raises(InvalidTransition):
        status.failed(_sub("completed"), T0, "prediction_failed")


def test_completed_keeps_started_at_and_records_payload():
    sub = _sub("in_progress", 1)
    upd = status.completed(sub, T0, corners=[1, 2, 3, 4])
    assert upd["status"] == "completed"
    assert upd["completed_at"] == to_iso(T0)
    assert "started_at" not in upd
    assert upd["corners"] == [1, 2, 3, 4]


def test_requeue_counts_attempts_and_clears_start():
    upd = status.requeue(_sub("in_progress", 1, attempts=1), T0, "malformed_output", "x" * 2000)
    assert upd["status"] == "wanted"
    assert upd["started_at"] is None
    assert upd["attempts"] == 2
    assert upd["error"] == "malformed_output"
    assert len(upd["error_detail"]) == 1000


def test_requeue_cap_turns_into_error():
    upd = status.requeue(_sub("in_progress", 1, attempts=2), T0, "malformed_output", max_attempts=3)
    assert upd["status"] == "error"
    assert upd["error"] == "max_attempts_exceeded"
    assert upd["last_error"] == "malformed_output"
    assert upd["attempts"] == 3


def test_requeue_unbounded_when_cap_is_zero():
    upd = status.requeue(_sub("in_progress", 1, attempts=99), T0, "stale", max_attempts=0)
    assert upd["status"] == "wanted"
    assert upd["attempts"] == 100


def test_failed_records_detail():
    upd = status.failed(_sub("in_progress", 1), T0, "prediction_failed", {"msg": "nsfw"})
    assert upd == {
        "status": "error",
        "failed_at": to_iso(T0),
        "lease_owner": None,
        "error": "prediction_failed",
        "error_detail": {"msg": "nsfw"},
    }
