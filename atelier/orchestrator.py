"""One short run over every item: corners, then form fill, then variants.

Each invocation scans items in name order and dispatches at most one unit of
work per item and phase, up to `max_units` per run. Work beyond the cap is
reported as skipped and left for the next invocation. The variant phase of an
item waits until its corner detection and form fill are no longer pending.

Also hosts the trigger operations (`enqueue`, `add_variant`,
`remove_variant`, `run_due_work`, `preview_due_work`) shared by the CLI and
the HTTP API.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List

from PIL import Image

from atelier import status, variants
from atelier.config import Settings, get_settings
from atelier.corners import CornerDetection
from atelier.form_fill import FormFill
from atelier.geometry import clamp_offset
from atelier.predictions import PredictionClient
from atelier.schemas import PreviewSummary, RunSummary, TaskResult
from atelier.status import Action, TaskStatus
from atelier.tasks import PredictionTask, TaskContext
from atelier.utils import to_iso
from storage.metadata import MetadataStore
from storage.paths import list_items, original_image

logger = logging.getLogger(__name__)

PROCESSED_OUTCOMES = ("submitted", "pending", "completed", "cleaned", "regenerated")
PENDING = (TaskStatus.WANTED, TaskStatus.IN_PROGRESS)

# accepted task names for enqueue -> sub-record key
TASK_KEYS = {
    "corners": "ai_corners",
    "ai_corners": "ai_corners",
    "form": "ai_fill_form",
    "ai_fill_form": "ai_fill_form",
    "regeneration": variants.REGENERATION_KEY,
    "variant_regeneration": variants.REGENERATION_KEY,
}


class UnknownItem(LookupError):
    def __init__(self, item: str):
        super().__init__(f"unknown item {item!r}")
        self.item = item


class UnknownTask(ValueError):
    pass


def base_tasks() -> List[PredictionTask]:
    return [CornerDetection(), FormFill()]


def build_context(settings: Settings | None = None, *, client: Any = None,
                  store: MetadataStore | None = None, run_id: str | None = None,
                  with_client: bool = True) -> TaskContext:
    s = settings or get_settings()
    if client is None and with_client:
        client = PredictionClient.from_settings(s)
    return TaskContext(
        store=store or MetadataStore(s.images_dir),
        settings=s,
        client=client,
        run_id=run_id or uuid.uuid4().hex[:8],
    )


def base_pending(record: Dict[str, Any]) -> bool:
    return any(
        status.status_of(record.get(task.path[0])) in PENDING
        for task in base_tasks()
    )


def has_variant_work(record: Dict[str, Any]) -> bool:
    return bool(
        variants.active_variants(record)
        or variants.variant_records(record)
        or record.get(variants.LEGACY_REGENERATION_FLAG)
        or record.get(variants.REGENERATION_KEY)
    )


class Orchestrator:
    def __init__(self, ctx: TaskContext, max_units: int | None = None):
        self.ctx = ctx
        self.max_units = max_units or ctx.settings.max_units_per_run
        self.units = 0
        self.summary = RunSummary(
            run_id=ctx.run_id,
            started_at=to_iso(ctx.now()),
            max_units=self.max_units,
        )

    def _tag(self) -> str:
        return f"[orchestrator {self.ctx.run_id}]"

    def _record(self, result: TaskResult) -> None:
        if result.outcome == "skipped":
            self.summary.skipped.append(result)
        elif result.outcome in PROCESSED_OUTCOMES:
            self.summary.processed.append(result)
        else:
            self.summary.errors.append(result)

    def _claim(self, item: str, task: str, **kwargs: Any) -> bool:
        """Take one unit from the budget, or log the work as skipped."""
        if self.units >= self.max_units:
            self.summary.limit_reached = True
            self._record(TaskResult(item=item, task=task, outcome="skipped", reason="limit_reached", **kwargs))
            return False
        self.units += 1
        return True

    def run(self, items: Iterable[str] | None = None) -> RunSummary:
        names = list(items) if items is not None else list_items(self.ctx.images_dir)
        logger.info("%s scanning %d items (cap %d)", self._tag(), len(names), self.max_units)
        for item in names:
            try:
                self._run_item(item)
            except OSError as e:
                # keep going; one unreadable item must not stop the run
                logger.error("%s %s: %s", self._tag(), item, e)
                self._record(TaskResult(item=item, task="item", outcome="error", error="io_error", detail=str(e)))
            except Exception as e:
                logger.exception("%s %s: unexpected failure", self._tag(), item)
                self._record(TaskResult(item=item, task="item", outcome="error", error="item_failed", detail=str(e)))
        self.summary.units = self.units
        self.summary.finished_at = to_iso(self.ctx.now())
        self.summary.counts = summarize(self.summary)
        logger.info(
            "%s done: %d processed, %d skipped, %d errors, %d units%s",
            self._tag(), len(self.summary.processed), len(self.summary.skipped),
            len(self.summary.errors), self.units, " (limit reached)" if self.summary.limit_reached else "",
        )
        return self.summary

    def _run_item(self, item: str) -> None:
        ctx = self.ctx
        now = ctx.now()
        record = ctx.store.read(item)

        for task in base_tasks():
            action = status.plan(record.get(task.path[0]), now, ctx.stale_after)
            if action is Action.NONE:
                continue
            if action is Action.BUSY:
                self._record(task.result(item, "skipped", reason="in_progress"))
                continue
            if self._claim(item, task.name):
                self._record(task.advance(ctx, item))

        record = ctx.store.read(item)
        if not has_variant_work(record):
            # artifacts can outlive their records
            self._cleanup(item, record)
            return
        if base_pending(record):
            self._record(TaskResult(item=item, task="variants", outcome="skipped", reason="waiting_for_base_image"))
            return

        due = variants.due_variants(ctx, item, record)
        if due:
            if self._claim(item, "variant_generation", data={"variants": due}):
                for result in variants.generate_variants(ctx, item, due):
                    self._record(result)
            # regeneration waits until every missing variant exists
        else:
            settled = variants.settle_regeneration(ctx, item, record)
            if settled is not None:
                self._record(settled)
                record = ctx.store.read(item)
            reason = variants.regeneration_reason(ctx, item, record)
            if reason and self._claim(item, "variant_regeneration", reason=reason):
                self._record(variants.regenerate_variants(ctx, item, reason))

        self._cleanup(item, ctx.store.read(item))

    def _cleanup(self, item: str, record: Dict[str, Any]) -> None:
        cleaned = variants.cleanup_orphans(self.ctx, item, record)
        if cleaned is not None:
            self._record(cleaned)

    def preview(self, items: Iterable[str] | None = None) -> PreviewSummary:
        """Same scan as `run`, without dispatching anything."""
        ctx = self.ctx
        now = ctx.now()
        names = list(items) if items is not None else list_items(ctx.images_dir)
        due: Dict[str, int] = {}
        gated: List[str] = []
        units = 0

        def bump(task: str, unit: bool = True) -> None:
            nonlocal units
            due[task] = due.get(task, 0) + 1
            if unit:
                units += 1

        for item in names:
            record = ctx.store.read(item)
            for task in base_tasks():
                if status.plan(record.get(task.path[0]), now, ctx.stale_after) in (
                        Action.SUBMIT, Action.POLL, Action.REQUEUE):
                    bump(task.name)
            if not has_variant_work(record):
                if variants.orphaned_variants(ctx, item, record):
                    bump("variant_cleanup", unit=False)
                continue
            if base_pending(record):
                gated.append(item)
                continue
            if variants.due_variants(ctx, item, record):
                bump("variant_generation")
            elif variants.regeneration_reason(ctx, item, record):
                bump("variant_regeneration")
            if variants.orphaned_variants(ctx, item, record):
                bump("variant_cleanup", unit=False)

        return PreviewSummary(
            items=len(names),
            due=due,
            due_units=units,
            would_dispatch=min(units, self.max_units),
            max_units=self.max_units,
            gated=gated,
        )


def summarize(summary: RunSummary) -> Dict[str, Any]:
    by_item: Dict[str, Dict[str, int]] = {}
    by_task: Dict[str, Dict[str, int]] = {}
    for bucket in ("processed", "skipped", "errors"):
        for r in getattr(summary, bucket):
            for key, table in ((r.item, by_item), (r.task, by_task)):
                row = table.setdefault(key, {"processed": 0, "skipped": 0, "errors": 0})
                row[bucket] += 1
    return {
        "processed": len(summary.processed),
        "skipped": len(summary.skipped),
        "errors": len(summary.errors),
        "by_item": by_item,
        "by_task": by_task,
    }


# -----------------
# Trigger operations
# -----------------

def run_due_work(settings: Settings | None = None, *, client: Any = None,
                 max_units: int | None = None, ctx: TaskContext | None = None) -> RunSummary:
    ctx = ctx or build_context(settings, client=client)
    return Orchestrator(ctx, max_units).run()


def preview_due_work(settings: Settings | None = None, *, max_units: int | None = None,
                     ctx: TaskContext | None = None) -> PreviewSummary:
    ctx = ctx or build_context(settings, with_client=False)
    return Orchestrator(ctx, max_units).preview()


def _ensure_record(ctx: TaskContext, item: str) -> Dict[str, Any]:
    if ctx.store.exists(item):
        return ctx.store.read(item)
    src = original_image(ctx.images_dir, item)
    if src is None:
        raise UnknownItem(item)
    record: Dict[str, Any] = {
        "original_filename": src.name,
        "frame_type": "white",
        "sold": False,
        "live": False,
        "active_variants": [],
    }
    try:
        with Image.open(src) as im:
            record["image_dimensions"] = {"width": im.size[0], "height": im.size[1]}
    except OSError as e:
        logger.warning("[enqueue %s] cannot read %s: %s", item, src.name, e)
    return ctx.store.create(item, record)


def enqueue(item: str, task: str, *, force: bool = False, offset_percent: float | None = None,
            settings: Settings | None = None, ctx: TaskContext | None = None) -> Dict[str, Any]:
    """Set `task` of `item` to wanted. Raises `InvalidTransition` for in-progress tasks unless forced."""
    key = TASK_KEYS.get(task)
    if key is None:
        raise UnknownTask(f"unknown task {task!r}; expected one of {sorted(TASK_KEYS)}")
    ctx = ctx or build_context(settings, with_client=False)
    record = _ensure_record(ctx, item)
    updates = status.wanted(record.get(key), ctx.now(), force=force)
    if key == "ai_corners" and offset_percent is not None:
        updates["offset_percent"] = clamp_offset(offset_percent)
    record = ctx.store.merge(item, {key: updates})
    logger.info("[enqueue %s] %s -> wanted", item, key)
    return record[key]


def add_variant(item: str, name: str, *, settings: Settings | None = None,
                ctx: TaskContext | None = None) -> Dict[str, Any]:
    if not variants.is_valid_name(name):
        raise ValueError(f"invalid variant name {name!r}")
    ctx = ctx or build_context(settings, with_client=False)
    record = _ensure_record(ctx, item)
    names = variants.active_variants(record)
    if name not in names:
        names.append(name)
        ctx.store.merge(item, {"active_variants": names})
    sub = variants.variant_records(record).get(name)
    if status.status_of(sub) not in PENDING:
        variants.request_variant(ctx, item, name)
    return ctx.store.read(item)


def remove_variant(item: str, name: str, *, settings: Settings | None = None,
                   ctx: TaskContext | None = None) -> Dict[str, Any]:
    """Drop `name` from `active_variants`; the cleanup pass removes the artifact."""
    ctx = ctx or build_context(settings, with_client=False)
    if not ctx.store.exists(item):
        raise UnknownItem(item)
    record = ctx.store.read(item)
    names = [n for n in variants.active_variants(record) if n != name]
    return ctx.store.merge(item, {"active_variants": names})


__all__ = [
    "Orchestrator",
    "UnknownItem",
    "UnknownTask",
    "TASK_KEYS",
    "build_context",
    "summarize",
    "run_due_work",
    "preview_due_work",
    "enqueue",
    "add_variant",
    "remove_variant",
]
