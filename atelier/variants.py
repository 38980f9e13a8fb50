"""Room-scene variants of the rectified painting.

`active_variants` (top level of the record) lists the variants an item should
have. Each one is tracked under `ai_painting_variants.variants.<name>` and its
artifact lands at `<base>_variant_<name>.jpg`. The variant phase runs three
passes in order: generation of missing/due variants, regeneration of variants
older than the final image (only when nothing is due), and cleanup of
artifacts whose name is no longer active.
"""

from __future__ import annotations

import io
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image

from atelier import status
from atelier.predictions import PredictionError, image_to_data_uri
from atelier.schemas import Prediction, TaskResult
from atelier.status import TaskStatus
from atelier.tasks import PredictionTask, TaskContext, TaskFailure
from atelier.utils import to_iso
from storage.metadata import MergeStrategy, MetadataWriteError
from storage.paths import (
    final_image,
    thumbnail_path,
    variant_artifacts,
    variant_path,
    variant_template,
    write_bytes_atomic,
)

logger = logging.getLogger(__name__)

VARIANTS_KEY = "ai_painting_variants"
REGENERATION_KEY = "variant_regeneration"
LEGACY_REGENERATION_FLAG = "variant_regeneration_status"
VARIANT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

PROMPT = """You are an image editor.

Task:
- Place the painting into the free space on the wall.
- Make sure that the painting looks exactly like the original image.{dimensions}"""


def is_valid_name(name: str) -> bool:
    return bool(VARIANT_NAME_RE.match(name or ""))


def active_variants(record: Dict[str, Any]) -> List[str]:
    names = record.get("active_variants")
    if not isinstance(names, list):
        return []
    out: List[str] = []
    for n in names:
        if isinstance(n, str) and n and n not in out:
            out.append(n)
    return out


def variant_records(record: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    container = record.get(VARIANTS_KEY)
    variants = container.get("variants") if isinstance(container, dict) else None
    if not isinstance(variants, dict):
        return {}
    return {k: v for k, v in variants.items() if isinstance(v, dict)}


def _dimensions_hint(record: Dict[str, Any]) -> str:
    w, h = record.get("width"), record.get("height")
    if not w or not h:
        return ""
    return (f"\n\nPainting dimensions: {w}cm (width) x {h}cm (height)."
            "\nPlace the painting at an appropriate scale relative to the room, considering its actual size.")


class VariantGeneration(PredictionTask):
    name = "variant_generation"

    def __init__(self, variant: str):
        self.variant = variant
        self.path = (VARIANTS_KEY, "variants", variant)

    def result(self, item: str, outcome: str, **kwargs: Any) -> TaskResult:
        return super().result(item, outcome, variant=self.variant, **kwargs)

    def model(self, ctx: TaskContext) -> str:
        return ctx.settings.variant_model

    def build_input(self, ctx: TaskContext, item: str, record: Dict[str, Any]) -> Dict[str, Any]:
        template = variant_template(ctx.variants_dir, self.variant)
        if template is None:
            raise TaskFailure("template_missing", f"no room template named {self.variant}")
        final = final_image(ctx.images_dir, item)
        if final is None:
            raise TaskFailure("final_image_missing", f"no final image for {item}")
        return {
            "prompt": PROMPT.format(dimensions=_dimensions_hint(record)),
            "image_input": [image_to_data_uri(template), image_to_data_uri(final)],
            "aspect_ratio": "1:1",
            "output_format": "jpg",
        }

    def finish(self, ctx: TaskContext, item: str, record: Dict[str, Any],
               sub: Dict[str, Any], prediction: Prediction) -> Tuple[Dict[str, Any], Dict[Any, Any]]:
        try:
            data = ctx.client.fetch_output(prediction.output)
        except PredictionError as e:
            raise TaskFailure("output_fetch_failed", str(e))
        try:
            with Image.open(io.BytesIO(data)) as im:
                im.verify()
        except (OSError, SyntaxError) as e:
            raise TaskFailure("malformed_output", f"output is not an image: {e}")

        target = sub.get("target_path") or str(variant_path(ctx.images_dir, item, self.variant))
        try:
            write_bytes_atomic(target, data)
        except OSError as e:
            raise TaskFailure("output_write_failed", str(e))
        logger.info("[variants %s] wrote %s (%d bytes)", item, target, len(data))
        return {"target_path": target, "bytes": len(data)}, {}


# -----------------
# Generation
# -----------------

def due_variants(ctx: TaskContext, item: str, record: Dict[str, Any]) -> List[str]:
    """Active variants that need a submit or poll this cycle.

    A variant is due when it is wanted or in progress, or when its artifact is
    missing and it is not parked in `error`.
    """
    artifacts = variant_artifacts(ctx.images_dir, item)
    records = variant_records(record)
    due = []
    for name in active_variants(record):
        st = status.status_of(records.get(name))
        if st in (TaskStatus.WANTED, TaskStatus.IN_PROGRESS):
            due.append(name)
        elif st is not TaskStatus.ERROR and name not in artifacts:
            due.append(name)
    return due


def request_variant(ctx: TaskContext, item: str, name: str, *, force: bool = False) -> Dict[str, Any]:
    """Mark one variant wanted, creating its record (with target path) if needed."""
    record = ctx.store.read(item)
    sub = variant_records(record).get(name)
    updates = status.wanted(sub, ctx.now(), force=force)
    updates["variant_name"] = name
    updates["target_path"] = (sub or {}).get("target_path") or str(variant_path(ctx.images_dir, item, name))
    record = ctx.store.merge(item, {(VARIANTS_KEY, "variants", name): updates})
    return variant_records(record)[name]


def generate_variants(ctx: TaskContext, item: str, names: List[str]) -> List[TaskResult]:
    """Advance every due variant of one item by one step."""
    results = []
    for name in names:
        task = VariantGeneration(name)
        sub = variant_records(ctx.store.read(item)).get(name)
        if status.status_of(sub) in (TaskStatus.ABSENT, TaskStatus.COMPLETED):
            try:
                request_variant(ctx, item, name)
            except MetadataWriteError as e:
                results.append(task.result(item, "error", error="metadata_write_failed", detail=str(e)))
                continue
        results.append(task.advance(ctx, item))
    return results


# -----------------
# Regeneration
# -----------------

def regeneration_reason(ctx: TaskContext, item: str, record: Dict[str, Any]) -> Optional[str]:
    if record.get(LEGACY_REGENERATION_FLAG) == "needed":
        return "requested"
    if status.status_of(record.get(REGENERATION_KEY)) is TaskStatus.WANTED:
        return "requested"
    final = final_image(ctx.images_dir, item)
    if final is None:
        return None
    final_mtime = final.stat().st_mtime
    records = variant_records(record)
    active = active_variants(record)
    for name, path in variant_artifacts(ctx.images_dir, item).items():
        if name not in active or status.status_of(records.get(name)) is TaskStatus.ERROR:
            continue
        if path.stat().st_mtime < final_mtime:
            return "outdated"
    return None


def regenerate_variants(ctx: TaskContext, item: str, reason: str) -> TaskResult:
    """Queue every generated, active variant again against the current final image."""
    now = ctx.now()
    record = ctx.store.read(item)
    records = variant_records(record)
    artifacts = variant_artifacts(ctx.images_dir, item)
    names = [
        n for n in active_variants(record)
        if n in artifacts and status.status_of(records.get(n)) is not TaskStatus.ERROR
    ]

    regen = record.get(REGENERATION_KEY)
    regen = dict(regen) if isinstance(regen, dict) else {}
    if status.status_of(regen) is not TaskStatus.WANTED:
        regen.update(status.wanted(regen, now, force=True))
    regen.update(status.in_progress(regen, now, ctx.run_id))
    regen.update(reason=reason, variants=names)
    if not names:
        regen.update(status.completed(regen, now))

    updates: Dict[Any, Any] = {REGENERATION_KEY: regen}
    for name in names:
        sub = records.get(name)
        u = status.wanted(sub, now, force=True)
        u["variant_name"] = name
        u["target_path"] = (sub or {}).get("target_path") or str(artifacts[name])
        updates[(VARIANTS_KEY, "variants", name)] = u
    try:
        ctx.store.merge(item, updates)
        if LEGACY_REGENERATION_FLAG in record:
            ctx.store.apply_patch(item, LEGACY_REGENERATION_FLAG, strategy=MergeStrategy.DELETE)
    except MetadataWriteError as e:
        return TaskResult(item=item, task="variant_regeneration", outcome="error",
                          error="metadata_write_failed", detail=str(e))
    logger.info("[variants %s] regeneration (%s) queued %s", item, reason, names)
    return TaskResult(item=item, task="variant_regeneration", outcome="regenerated",
                      reason=reason, data={"variants": names})


def settle_regeneration(ctx: TaskContext, item: str, record: Dict[str, Any]) -> Optional[TaskResult]:
    """Close an in-progress regeneration once none of its variants is due."""
    regen = record.get(REGENERATION_KEY)
    if status.status_of(regen) is not TaskStatus.IN_PROGRESS:
        return None
    try:
        ctx.store.merge(item, {REGENERATION_KEY: status.completed(regen, ctx.now())})
    except MetadataWriteError as e:
        return TaskResult(item=item, task="variant_regeneration", outcome="error",
                          error="metadata_write_failed", detail=str(e))
    return TaskResult(item=item, task="variant_regeneration", outcome="completed")


# -----------------
# Cleanup
# -----------------

def orphaned_variants(ctx: TaskContext, item: str, record: Dict[str, Any]) -> List[str]:
    active = set(active_variants(record))
    names = set(variant_artifacts(ctx.images_dir, item)) | set(variant_records(record))
    return sorted(n for n in names if n not in active)


def cleanup_orphans(ctx: TaskContext, item: str, record: Dict[str, Any]) -> Optional[TaskResult]:
    """Delete artifacts (and thumbnails) of variants no longer active and drop their records."""
    orphans = orphaned_variants(ctx, item, record)
    if not orphans:
        return None
    now = ctx.now()
    artifacts = variant_artifacts(ctx.images_dir, item)
    records = variant_records(record)
    cleaned: List[str] = []
    failures: List[Dict[str, str]] = []
    for name in orphans:
        sub = records.get(name)
        st = status.status_of(sub)
        if st is TaskStatus.IN_PROGRESS and not status.is_stale(st, sub.get("started_at"), now, ctx.stale_after):
            # a live job is still out; let it land first
            continue
        path = artifacts.get(name)
        try:
            if path is not None:
                path.unlink()
                thumb = thumbnail_path(path)
                if thumb.exists():
                    thumb.unlink()
            if name in records:
                ctx.store.apply_patch(item, (VARIANTS_KEY, "variants", name), strategy=MergeStrategy.DELETE)
        except OSError as e:
            logger.warning("[variants %s] cleanup of %s failed: %s", item, name, e)
            failures.append({"variant": name, "error": str(e)})
            continue
        cleaned.append(name)
    if failures:
        return TaskResult(item=item, task="variant_cleanup", outcome="error", error="cleanup_failed",
                          detail=failures, data={"cleaned": cleaned})
    if not cleaned:
        return None
    logger.info("[variants %s] removed orphaned variants %s", item, cleaned)
    return TaskResult(item=item, task="variant_cleanup", outcome="cleaned", data={"cleaned": cleaned})


__all__ = [
    "VariantGeneration",
    "is_valid_name",
    "active_variants",
    "variant_records",
    "due_variants",
    "request_variant",
    "generate_variants",
    "regeneration_reason",
    "regenerate_variants",
    "settle_regeneration",
    "orphaned_variants",
    "cleanup_orphans",
]
