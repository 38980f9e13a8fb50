import logging
from fastapi import FastAPI, HTTPException, BackgroundTasks, Depends, Query
from pydantic import BaseModel
from atelier.config import get_settings
from atelier.orchestrator import (
    UnknownItem, UnknownTask, build_context, enqueue, add_variant, remove_variant,
    run_due_work, preview_due_work,
)
from atelier.schemas import EnqueueRequest, RunRequest, RunSummary, PreviewSummary
from atelier.status import InvalidTransition
from atelier.tasks import TaskContext
from storage.metadata import MetadataWriteError
from storage.paths import list_items

logging.basicConfig(level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
                    format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Atelier task runner")


class RunResp(BaseModel):
    accepted: bool
    summary: RunSummary | None = None
    preview: PreviewSummary | None = None


def context_dep() -> TaskContext:
    """One context (store, settings, prediction client, run id) per request."""
    return build_context(get_settings())


def _run_in_background(ctx: TaskContext, max_units: int | None):
    try:
        run_due_work(ctx=ctx, max_units=max_units)
    except Exception:
        logger.exception("[api %s] background run failed", ctx.run_id)
        raise


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, UnknownItem):
        return HTTPException(404, str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(409, str(e))
    if isinstance(e, MetadataWriteError):
        return HTTPException(500, str(e))
    return HTTPException(400, str(e))


@app.get("/healthz")
def healthz(): return {"ok": True}


@app.get("/items")
def items(ctx: TaskContext = Depends(context_dep)):
    return {"items": list_items(ctx.images_dir)}


@app.get("/items/{item}")
def item_record(item: str, ctx: TaskContext = Depends(context_dep)):
    if not ctx.store.exists(item):
        raise HTTPException(404, "not found")
    return ctx.store.read(item)


@app.post("/items/{item}/tasks/{task}")
def enqueue_task(item: str, task: str, req: EnqueueRequest | None = None,
                 ctx: TaskContext = Depends(context_dep)):
    req = req or EnqueueRequest()
    try:
        sub = enqueue(item, task, force=req.force, offset_percent=req.offset_percent, ctx=ctx)
    except (UnknownItem, UnknownTask, InvalidTransition, MetadataWriteError) as e:
        raise _http_error(e)
    return {"item": item, "task": task, "record": sub}


@app.post("/items/{item}/variants/{name}")
def add_item_variant(item: str, name: str, ctx: TaskContext = Depends(context_dep)):
    try:
        record = add_variant(item, name, ctx=ctx)
    except (UnknownItem, ValueError, MetadataWriteError) as e:
        raise _http_error(e)
    return {"item": item, "active_variants": record.get("active_variants", [])}


@app.delete("/items/{item}/variants/{name}")
def remove_item_variant(item: str, name: str, ctx: TaskContext = Depends(context_dep)):
    try:
        record = remove_variant(item, name, ctx=ctx)
    except (UnknownItem, MetadataWriteError) as e:
        raise _http_error(e)
    return {"item": item, "active_variants": record.get("active_variants", [])}


@app.get("/preview", response_model=PreviewSummary)
def preview(max_units: int | None = Query(None, ge=1), ctx: TaskContext = Depends(context_dep)):
    return preview_due_work(ctx=ctx, max_units=max_units)


@app.post("/run", response_model=RunResp)
def run(background_tasks: BackgroundTasks, req: RunRequest | None = None,
        run_async: bool = Query(False, alias="async"), ctx: TaskContext = Depends(context_dep)):
    req = req or RunRequest()
    if run_async:
        # Non-blocking: report what is due now and run after the response is sent
        counts = preview_due_work(ctx=ctx, max_units=req.max_units)
        background_tasks.add_task(_run_in_background, ctx, req.max_units)
        return RunResp(accepted=True, preview=counts)
    return RunResp(accepted=True, summary=run_due_work(ctx=ctx, max_units=req.max_units))
