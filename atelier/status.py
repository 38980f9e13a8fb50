"""Per-task lifecycle: absent -> wanted -> in_progress -> completed | error.

Sub-records are plain dicts inside the item's metadata record. The helpers
here never write; they return the `{field: value}` updates a caller merges into
the sub-record, so every transition can be checked without touching disk.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Mapping

from atelier.utils import excerpt, parse_ts, to_iso

DEFAULT_STALE_AFTER = timedelta(minutes=10)


class TaskStatus(str, Enum):
    ABSENT = "absent"
    WANTED = "wanted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


# Older records spell a few states differently.
_ALIASES = {
    "needed": TaskStatus.WANTED,
    "queued": TaskStatus.WANTED,
    "processing": TaskStatus.IN_PROGRESS,
    "done": TaskStatus.COMPLETED,
    "failed": TaskStatus.ERROR,
}

TRANSITIONS: Dict[TaskStatus, frozenset] = {
    TaskStatus.ABSENT: frozenset({TaskStatus.WANTED}),
    TaskStatus.WANTED: frozenset({TaskStatus.WANTED, TaskStatus.IN_PROGRESS, TaskStatus.ERROR}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.WANTED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.WANTED}),
    TaskStatus.ERROR: frozenset({TaskStatus.WANTED}),
}


class Action(str, Enum):
    NONE = "none"        # nothing to do
    SUBMIT = "submit"    # wanted: dispatch a new external job
    POLL = "poll"        # in progress with a live handle
    REQUEUE = "requeue"  # in progress but abandoned
    BUSY = "busy"        # in progress elsewhere, not yet stale


class InvalidTransition(ValueError):
    def __init__(self, current: TaskStatus, target: TaskStatus):
        super().__init__(f"illegal task transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def coerce_status(value: Any) -> TaskStatus:
    if value is None or value == "":
        return TaskStatus.ABSENT
    if isinstance(value, TaskStatus):
        return value
    s = str(value).strip().lower()
    if s in _ALIASES:
        return _ALIASES[s]
    try:
        return TaskStatus(s)
    except ValueError:
        return TaskStatus.ABSENT


def status_of(sub: Mapping[str, Any] | None) -> TaskStatus:
    if not isinstance(sub, Mapping):
        return TaskStatus.ABSENT
    return coerce_status(sub.get("status"))


def check_transition(current: TaskStatus, target: TaskStatus) -> None:
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current, target)


def is_stale(status: Any, started_at: Any, now: datetime,
             threshold: timedelta = DEFAULT_STALE_AFTER) -> bool:
    """True when an in-progress task has run longer than `threshold`.

    An in-progress task with no readable `started_at` can never age out on its
    own, so it counts as stale.
    """
    if coerce_status(status) is not TaskStatus.IN_PROGRESS:
        return False
    started = parse_ts(started_at)
    if started is None:
        return True
    return now - started > threshold


def plan(sub: Mapping[str, Any] | None, now: datetime,
         threshold: timedelta = DEFAULT_STALE_AFTER) -> Action:
    st = status_of(sub)
    if st is TaskStatus.WANTED:
        return Action.SUBMIT
    if st is not TaskStatus.IN_PROGRESS:
        return Action.NONE
    if sub is None:
        return Action.NONE
    if is_stale(st, sub.get("started_at"), now, threshold):
        return Action.REQUEUE
    if sub.get("prediction_url"):
        return Action.POLL
    return Action.BUSY


# -----------------
# Transition updates
# -----------------

def wanted(sub: Mapping[str, Any] | None, now: datetime, *, force: bool = False) -> Dict[str, Any]:
    """Explicit request (user/API). `force` allows resetting an in-progress task."""
    current = status_of(sub)
    if current is TaskStatus.IN_PROGRESS and not force:
        raise InvalidTransition(current, TaskStatus.WANTED)
    if current is not TaskStatus.IN_PROGRESS:
        check_transition(current, TaskStatus.WANTED)
    return {
        "status": TaskStatus.WANTED.value,
        "requested_at": to_iso(now),
        "started_at": None,
        "prediction_url": None,
        "prediction_id": None,
        "prediction_status": None,
        "lease_owner": None,
        "attempts": 0,
        "error": None,
        "error_detail": None,
    }


def in_progress(sub: Mapping[str, Any] | None, now: datetime, owner: str) -> Dict[str, Any]:
    check_transition(status_of(sub), TaskStatus.IN_PROGRESS)
    return {
        "status": TaskStatus.IN_PROGRESS.value,
        "started_at": to_iso(now),
        "lease_owner": owner,
        "prediction_url": None,
        "prediction_id": None,
        "prediction_status": None,
        "error": None,
        "error_detail": None,
    }


def completed(sub: Mapping[str, Any] | None, now: datetime, **payload: Any) -> Dict[str, Any]:
    check_transition(status_of(sub), TaskStatus.COMPLETED)
    return {
        "status": TaskStatus.COMPLETED.value,
        "completed_at": to_iso(now),
        "lease_owner": None,
        "error": None,
        "error_detail": None,
        **payload,
    }


def failed(sub: Mapping[str, Any] | None, now: datetime, code: str, detail: Any = None) -> Dict[str, Any]:
    check_transition(status_of(sub), TaskStatus.ERROR)
    return {
        "status": TaskStatus.ERROR.value,
        "failed_at": to_iso(now),
        "lease_owner": None,
        "error": code,
        "error_detail": _detail(detail),
    }


def requeue(sub: Mapping[str, Any] | None, now: datetime, code: str, detail: Any = None,
            *, max_attempts: int = 0, **extra: Any) -> Dict[str, Any]:
    """Automatic retry: back to wanted with `attempts` bumped.

    Once `attempts` reaches `max_attempts` (when positive) the task fails
    permanently with `max_attempts_exceeded` instead.
    """
    attempts = int((sub or {}).get("attempts") or 0) + 1
    if max_attempts > 0 and attempts >= max_attempts:
        updates = failed(sub, now, "max_attempts_exceeded", detail or code)
        updates.update(attempts=attempts, last_error=code, **extra)
        return updates
    check_transition(status_of(sub), TaskStatus.WANTED)
    return {
        "status": TaskStatus.WANTED.value,
        "requeued_at": to_iso(now),
        "started_at": None,
        "lease_owner": None,
        "prediction_url": None,
        "prediction_id": None,
        "attempts": attempts,
        "error": code,
        "error_detail": _detail(detail),
        **extra,
    }


def _detail(detail: Any) -> Any:
    if detail is None or isinstance(detail, (int, float, bool)):
        return detail
    if isinstance(detail, (dict, list)):
        return detail
    return excerpt(str(detail))


__all__ = [
    "TaskStatus",
    "Action",
    "InvalidTransition",
    "TRANSITIONS",
    "DEFAULT_STALE_AFTER",
    "coerce_status",
    "status_of",
    "check_transition",
    "is_stale",
    "plan",
    "wanted",
    "in_progress",
    "completed",
    "failed",
    "requeue",
]
