"""Shared submit/poll/settle loop for tasks backed by one external prediction.

A task owns one sub-record (`path`) in the item's metadata. `advance` moves it
at most one step per call:

    wanted               -> submit, in_progress (+ prediction handle)
    in_progress (live)   -> poll; settle when the job is terminal
    in_progress (stale)  -> requeue, then submit again

Subclasses supply the model input (`build_input`) and turn a succeeded job
into record updates (`finish`). Every outcome comes back as a `TaskResult`;
nothing raised inside a task escapes `advance`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Tuple

from atelier import status
from atelier.config import Settings
from atelier.geometry import GeometryError
from atelier.predictions import PredictionError
from atelier.schemas import Prediction, TaskResult
from atelier.status import Action, InvalidTransition, TaskStatus
from atelier.utils import to_iso, utcnow
from storage.metadata import MetadataStore, MetadataWriteError, get_path

logger = logging.getLogger(__name__)


@dataclass
class TaskContext:
    store: MetadataStore
    settings: Settings
    client: Any
    run_id: str
    clock: Callable[[], datetime] = field(default=utcnow)

    @property
    def images_dir(self) -> Path:
        return Path(self.settings.images_dir)

    @property
    def variants_dir(self) -> Path:
        return Path(self.settings.variants_dir)

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.settings.stale_after_seconds)

    def now(self) -> datetime:
        return self.clock()


class TaskFailure(Exception):
    """Raised by task hooks; `requeue=False` makes the failure terminal."""

    def __init__(self, code: str, detail: Any = None, *, requeue: bool = True,
                 updates: Mapping[str, Any] | None = None):
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail
        self.requeue = requeue
        self.updates = dict(updates or {})


class PredictionTask:
    name: str = "task"
    path: Tuple[str, ...] = ()

    # -- hooks --------------------------------------------------------------

    def model(self, ctx: TaskContext) -> str:
        raise NotImplementedError

    def build_input(self, ctx: TaskContext, item: str, record: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def finish(self, ctx: TaskContext, item: str, record: Dict[str, Any],
               sub: Dict[str, Any], prediction: Prediction) -> Tuple[Dict[str, Any], Dict[Any, Any]]:
        """Return `(sub-record payload, other record updates)` for a succeeded job."""
        raise NotImplementedError

    # -- driver -------------------------------------------------------------

    def result(self, item: str, outcome: str, **kwargs: Any) -> TaskResult:
        return TaskResult(item=item, task=self.name, outcome=outcome, **kwargs)

    def sub_record(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        sub = get_path(record, self.path)
        return dict(sub) if isinstance(sub, dict) else {}

    def save(self, ctx: TaskContext, item: str, updates: Dict[str, Any],
             extra: Mapping[Any, Any] | None = None) -> Dict[str, Any]:
        record = ctx.store.merge(item, {self.path: updates, **(extra or {})})
        return self.sub_record(record)

    def advance(self, ctx: TaskContext, item: str) -> TaskResult:
        try:
            return self._advance(ctx, item)
        except MetadataWriteError as e:
            logger.error("[%s %s] %s", self.name, item, e)
            return self.result(item, "error", error="metadata_write_failed", detail=str(e))
        except InvalidTransition as e:
            # another run moved the task under us
            logger.warning("[%s %s] %s", self.name, item, e)
            return self.result(item, "skipped", reason="concurrent_update", detail=str(e))
        except Exception as e:
            # keep the rest of the run going; the task stays where it was
            logger.exception("[%s %s] handler failed", self.name, item)
            return self.result(item, "error", error="handler_failed", detail=str(e))

    def _advance(self, ctx: TaskContext, item: str) -> TaskResult:
        record = ctx.store.read(item)
        sub = self.sub_record(record)
        now = ctx.now()
        action = status.plan(sub, now, ctx.stale_after)

        if action is Action.NONE:
            return self.result(item, "skipped", reason=status.status_of(sub).value)
        if action is Action.BUSY:
            return self.result(item, "skipped", reason="in_progress")
        if action is Action.POLL:
            return self._poll(ctx, item, sub, now)
        if action is Action.REQUEUE:
            logger.warning("[%s %s] stale since %s; requeueing", self.name, item, sub.get("started_at"))
            sub = self.save(ctx, item, status.requeue(
                sub, now, "stale", f"started_at {sub.get('started_at')}",
                max_attempts=ctx.settings.max_attempts,
            ))
            if status.status_of(sub) is TaskStatus.ERROR:
                return self.result(item, "failed", error=sub.get("error"), detail=sub.get("error_detail"))
        return self._submit(ctx, item, record, sub, now)

    def _reject(self, ctx: TaskContext, item: str, sub: Dict[str, Any], now: datetime,
                failure: TaskFailure) -> TaskResult:
        if failure.requeue:
            updates = status.requeue(sub, now, failure.code, failure.detail,
                                     max_attempts=ctx.settings.max_attempts, **failure.updates)
        else:
            updates = status.failed(sub, now, failure.code, failure.detail)
            updates.update(failure.updates)
        sub = self.save(ctx, item, updates)
        st = status.status_of(sub)
        logger.warning("[%s %s] %s -> %s", self.name, item, failure, st.value)
        outcome = "requeued" if st is TaskStatus.WANTED else "failed"
        return self.result(item, outcome, error=sub.get("error"), detail=sub.get("error_detail"))

    def _submit(self, ctx: TaskContext, item: str, record: Dict[str, Any],
                sub: Dict[str, Any], now: datetime) -> TaskResult:
        try:
            payload = self.build_input(ctx, item, record)
        except TaskFailure as f:
            return self._reject(ctx, item, sub, now, f)

        # narrow the window in which two runs both claim the same task
        sub = self.sub_record(ctx.store.read(item))
        if status.plan(sub, now, ctx.stale_after) is not Action.SUBMIT:
            return self.result(item, "skipped", reason="claimed_by_other_run",
                               detail=sub.get("lease_owner"))
        sub = self.save(ctx, item, status.in_progress(sub, now, ctx.run_id))
        model = self.model(ctx)
        try:
            pred = ctx.client.submit(model, payload)
        except PredictionError as e:
            return self._reject(ctx, item, sub, now,
                                TaskFailure("submit_failed", str(e), requeue=e.transient))

        sub = self.save(ctx, item, {
            "prediction_url": pred.get_url,
            "prediction_id": pred.id,
            "prediction_status": pred.status,
            "model": model,
        })
        logger.info("[%s %s] submitted %s", self.name, item, pred.id)
        if pred.is_terminal:
            return self._settle(ctx, item, sub, pred, now)
        return self.result(item, "submitted", data={"prediction_id": pred.id})

    def _poll(self, ctx: TaskContext, item: str, sub: Dict[str, Any], now: datetime) -> TaskResult:
        try:
            pred = ctx.client.poll(sub["prediction_url"])
        except PredictionError as e:
            if e.transient:
                # leave the task in progress; the next run polls again
                logger.warning("[%s %s] poll failed: %s", self.name, item, e)
                return self.result(item, "error", error="poll_failed", detail=str(e))
            return self._reject(ctx, item, sub, now, TaskFailure("poll_failed", str(e)))

        sub = self.save(ctx, item, {"prediction_status": pred.status, "polled_at": to_iso(now)})
        if not pred.is_terminal:
            return self.result(item, "pending", data={"prediction_status": pred.status})
        return self._settle(ctx, item, sub, pred, now)

    def _settle(self, ctx: TaskContext, item: str, sub: Dict[str, Any],
                pred: Prediction, now: datetime) -> TaskResult:
        if not pred.succeeded:
            detail = pred.error or pred.status
            sub = self.save(ctx, item, status.failed(sub, now, "prediction_failed", detail))
            logger.warning("[%s %s] prediction %s: %s", self.name, item, pred.status, detail)
            return self.result(item, "failed", error="prediction_failed", detail=sub.get("error_detail"))

        record = ctx.store.read(item)
        try:
            payload, extra = self.finish(ctx, item, record, sub, pred)
        except TaskFailure as f:
            return self._reject(ctx, item, sub, now, f)
        except GeometryError as e:
            return self._reject(ctx, item, sub, now, TaskFailure("malformed_output", str(e)))

        self.save(ctx, item, status.completed(sub, now, **payload), extra)
        logger.info("[%s %s] completed", self.name, item)
        return self.result(item, "completed")


__all__ = ["TaskContext", "TaskFailure", "PredictionTask"]
