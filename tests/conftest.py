from __future__ import annotations

import io
from datetime import datetime, timezone
from pathlib import Path

import pytest
from PIL import Image

from atelier.config import Settings
from atelier.predictions import PredictionError
from atelier.schemas import Prediction
from atelier.tasks import TaskContext
from storage.metadata import MetadataStore

T0 = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeClient:
    """In-memory stand-in for the prediction API."""

    def __init__(self):
        self.submitted = []
        self.polled = []
        self.results = {}
        self.files = {}
        self.submit_error = None
        self._n = 0

    def submit(self, model, input):
        if self.submit_error is not None:
            raise self.submit_error
        self._n += 1
        pid = f"p{self._n}"
        self.submitted.append({"id": pid, "model": model, "input": input})
        return Prediction(id=pid, status="starting", urls={"get": self.url(pid)})

    def url(self, pid):
        return f"https://api.test/v1/predictions/{pid}"

    def last_id(self):
        return self.submitted[-1]["id"]

    def finish(self, pid, output=None, status="succeeded", error=None):
        self.results[self.url(pid)] = Prediction(id=pid, status=status, output=output, error=error,
                                                 urls={"get": self.url(pid)})

    def fail_poll(self, pid, transient=True):
        self.results[self.url(pid)] = PredictionError("boom", transient=transient)

    def poll(self, url):
        self.polled.append(url)
        res = self.results.get(url)
        if isinstance(res, Exception):
            raise res
        if res is None:
            return Prediction(id=url.rsplit("/", 1)[-1], status="processing", urls={"get": url})
        return res

    def fetch_output(self, output):
        ref = output[0] if isinstance(output, list) else output
        if ref not in self.files:
            raise PredictionError(f"no such file {ref}")
        return self.files[ref]


def jpeg_bytes(size=(64, 64), color="red") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()


def make_photo(images_dir: Path, base: str, size=(1000, 1000)) -> Path:
    images_dir.mkdir(parents=True, exist_ok=True)
    path = images_dir / f"{base}_original.jpg"
    Image.new("RGB", size, "white").save(path, format="JPEG")
    return path


@pytest.fixture
def settings(tmp_path):
    return Settings(
        images_dir=str(tmp_path / "images"),
        variants_dir=str(tmp_path / "variants"),
        api_token="test-token",
        api_base_url="https://api.test/v1",
        max_attempts=3,
    )


@pytest.fixture
def images_dir(settings):
    p = Path(settings.images_dir)
    p.mkdir(parents=True, exist_ok=True)
    return p


@pytest.fixture
def variants_dir(settings):
    p = Path(settings.variants_dir)
    p.mkdir(parents=True, exist_ok=True)
    return p


@pytest.fixture
def store(images_dir):
    return MetadataStore(images_dir)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def ctx(store, settings, client, clock):
    return TaskContext(store=store, settings=settings, client=client, run_id="run1", clock=clock)
