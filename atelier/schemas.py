from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

TERMINAL_STATUSES = ("succeeded", "failed", "canceled")


class Prediction(BaseModel):
    """External job as reported by the prediction API."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    status: str = "starting"
    urls: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Any = None

    @property
    def get_url(self) -> str | None:
        url = (self.urls or {}).get("get")
        return str(url) if url else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class TaskResult(BaseModel):
    item: str
    task: str
    outcome: str
    variant: str | None = None
    error: str | None = None
    detail: Any = None
    reason: str | None = None
    data: Dict[str, Any] = Field(default_factory=dict)


class RunSummary(BaseModel):
    run_id: str
    started_at: str
    finished_at: str | None = None
    max_units: int
    units: int = 0
    limit_reached: bool = False
    processed: List[TaskResult] = Field(default_factory=list)
    skipped: List[TaskResult] = Field(default_factory=list)
    errors: List[TaskResult] = Field(default_factory=list)
    counts: Dict[str, Any] = Field(default_factory=dict)


class PreviewSummary(BaseModel):
    items: int
    due: Dict[str, int] = Field(default_factory=dict)
    due_units: int = 0
    would_dispatch: int = 0
    max_units: int
    gated: List[str] = Field(default_factory=list)


class EnqueueRequest(BaseModel):
    force: bool = False
    offset_percent: float | None = None


class RunRequest(BaseModel):
    max_units: int | None = Field(None, ge=1, le=100)
