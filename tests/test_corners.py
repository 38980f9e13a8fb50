from datetime import timedelta

from PIL import Image

from atelier.corners import CornerDetection
from atelier.predictions import PredictionError
from atelier.utils import to_iso

from conftest import T0, jpeg_bytes, make_photo

# streamed token output, as the model returns it
CORNER_TOKENS = [
    "```json\n{\n  \"corners\": [\n",
    "    {\"x\": 10, \"y\": 15, \"label\": \"top-left\"},\n",
    "    {\"x\": 90, \"y\": 15, \"label\": \"top-right\"},\n",
    "    {\"x\": 90, \"y\": 85, \"label\": \"bottom-right\"},\n",
    "    {\"x\": 10, \"y\": 85, \"label\": \"bottom-left\"}\n  ]\n}\n```",
]


def _wanted(store, item="a", **extra):
    store.create(item, {"ai_corners": {"status": "wanted", **extra}})


def test_submit_poll_complete(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    task = CornerDetection()

    res = task.advance(ctx, "a")
    assert res.outcome == "submitted"
    sub = store.read("a")["ai_corners"]
    assert sub["status"] == "in_progress"
    assert sub["started_at"] == to_iso(T0)
    assert sub["lease_owner"] == "run1"
    assert sub["prediction_url"] == client.url("p1")
    assert sub["prediction_id"] == "p1"
    payload = client.submitted[0]["input"]
    assert payload["images"][0].startswith("data:image/jpeg;base64,")
    assert "four corners" in payload["prompt"]

    assert task.advance(ctx, "a").outcome == "pending"
    assert store.read("a")["ai_corners"]["prediction_status"] == "processing"

    client.finish("p1", output=CORNER_TOKENS)
    res = task.advance(ctx, "a")
    assert res.outcome == "completed"

    rec = store.read("a")
    sub = rec["ai_corners"]
    assert sub["status"] == "completed"
    assert sub["completed_at"] == to_iso(T0)
    assert sub["started_at"] == to_iso(T0)
    assert sub["offset_percent"] == 1.0
    assert [c["x"] for c in sub["corners_used"]] == [108, 892, 892, 108]
    assert sub["output_dimensions"] == {"width": 784, "height": 686}
    assert rec["manual_corners"] == [[108, 157], [892, 157], [892, 843], [108, 843]]
    assert rec["image_dimensions"] == {"width": 1000, "height": 1000}
    with Image.open(images_dir / "a_final.jpg") as im:
        assert im.size == (784, 686)
    assert "variant_regeneration" not in rec


def test_offset_from_record_is_used(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store, offset_percent=0)
    task = CornerDetection()
    task.advance(ctx, "a")
    client.finish("p1", output="".join(CORNER_TOKENS))
    task.advance(ctx, "a")
    assert store.read("a")["manual_corners"][0] == [100, 150]


def test_completion_requests_variant_regeneration(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    (images_dir / "a_variant_room.jpg").write_bytes(jpeg_bytes())
    store.create("a", {"active_variants": ["room"], "ai_corners": {"status": "wanted"}})
    task = CornerDetection()
    task.advance(ctx, "a")
    client.finish("p1", output=CORNER_TOKENS)
    task.advance(ctx, "a")
    regen = store.read("a")["variant_regeneration"]
    assert regen["status"] == "wanted"
    assert regen["reason"] == "final_image_updated"


def test_no_regeneration_before_any_variant_exists(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    store.create("a", {"active_variants": ["room"], "ai_corners": {"status": "wanted"}})
    task = CornerDetection()
    task.advance(ctx, "a")
    client.finish("p1", output=CORNER_TOKENS)
    task.advance(ctx, "a")
    assert "variant_regeneration" not in store.read("a")


def test_malformed_output_requeues(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    task = CornerDetection()
    task.advance(ctx, "a")
    client.finish("p1", output="I could not find a painting in this photo.")
    res = task.advance(ctx, "a")
    assert res.outcome == "requeued"
    assert res.error == "malformed_output"
    sub = store.read("a")["ai_corners"]
    assert sub["status"] == "wanted"
    assert sub["started_at"] is None
    assert sub["attempts"] == 1
    assert sub["output_text"] == "I could not find a painting in this photo."
    assert not (images_dir / "a_final.jpg").exists()


def test_three_corners_is_malformed(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    task = CornerDetection()
    task.advance(ctx, "a")
    client.finish("p1", output='{"corners": [{"x": 1, "y": 1}, {"x": 2, "y": 2}, {"x": 3, "y": 3}]}')
    assert task.advance(ctx, "a").error == "malformed_output"


def test_repeated_malformed_output_hits_attempt_cap(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    task = CornerDetection()
    for _ in range(3):
        task.advance(ctx, "a")
        client.finish(client.last_id(), output="nope")
        res = task.advance(ctx, "a")
    assert res.outcome == "failed"
    sub = store.read("a")["ai_corners"]
    assert sub["status"] == "error"
    assert sub["error"] == "max_attempts_exceeded"
    assert sub["attempts"] == 3
    assert len(client.submitted) == 3


def test_terminal_failure_sets_error(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    task = CornerDetection()
    task.advance(ctx, "a")
    client.finish("p1", status="failed", error="model crashed")
    res = task.advance(ctx, "a")
    assert res.outcome == "failed"
    assert res.error == "prediction_failed"
    sub = store.read("a")["ai_corners"]
    assert sub["status"] == "error"
    assert sub["error_detail"] == "model crashed"
    # an errored task is left alone until someone re-enqueues it
    assert task.advance(ctx, "a").outcome == "skipped"


def test_canceled_is_terminal(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    task = CornerDetection()
    task.advance(ctx, "a")
    client.finish("p1", status="canceled")
    task.advance(ctx, "a")
    assert store.read("a")["ai_corners"]["status"] == "error"


def test_transient_poll_error_keeps_in_progress(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    task = CornerDetection()
    task.advance(ctx, "a")
    client.fail_poll("p1")
    res = task.advance(ctx, "a")
    assert res.outcome == "error"
    assert res.error == "poll_failed"
    sub = store.read("a")["ai_corners"]
    assert sub["status"] == "in_progress"
    assert sub["prediction_url"] == client.url("p1")


def test_unexpected_handler_error_is_reported(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    task = CornerDetection()
    task.advance(ctx, "a")
    client.results[client.url("p1")] = RuntimeError("boom")
    res = task.advance(ctx, "a")
    assert (res.outcome, res.error, res.detail) == ("error", "handler_failed", "boom")
    assert store.read("a")["ai_corners"]["status"] == "in_progress"


def test_submit_failure_requeues(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    client.submit_error = PredictionError("connection reset")
    res = CornerDetection().advance(ctx, "a")
    assert res.outcome == "requeued"
    assert res.error == "submit_failed"
    sub = store.read("a")["ai_corners"]
    assert sub["status"] == "wanted"
    assert sub["attempts"] == 1


def test_rejected_submit_is_terminal(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    _wanted(store)
    client.submit_error = PredictionError("HTTP 401", transient=False, status_code=401)
    res = CornerDetection().advance(ctx, "a")
    assert res.outcome == "failed"
    assert store.read("a")["ai_corners"]["status"] == "error"


def test_missing_source_image(ctx, store, client):
    _wanted(store)
    res = CornerDetection().advance(ctx, "a")
    assert res.outcome == "failed"
    assert res.error == "source_image_missing"
    assert store.read("a")["ai_corners"]["status"] == "error"
    assert client.submitted == []


def test_stale_job_is_resubmitted(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    started = to_iso(T0 - timedelta(minutes=11))
    store.create("a", {"ai_corners": {"status": "in_progress", "started_at": started,
                                      "prediction_url": "https://api.test/v1/predictions/old"}})
    res = CornerDetection().advance(ctx, "a")
    assert res.outcome == "submitted"
    sub = store.read("a")["ai_corners"]
    assert sub["status"] == "in_progress"
    assert sub["started_at"] == to_iso(T0)
    assert sub["attempts"] == 1
    assert sub["prediction_url"] == client.url("p1")
    assert client.polled == []


def test_busy_without_handle_is_skipped(ctx, store, client, images_dir):
    make_photo(images_dir, "a")
    started = to_iso(T0 - timedelta(minutes=2))
    store.create("a", {"ai_corners": {"status": "in_progress", "started_at": started, "lease_owner": "other"}})
    res = CornerDetection().advance(ctx, "a")
    assert res.outcome == "skipped"
    assert res.reason == "in_progress"
    assert client.submitted == []
