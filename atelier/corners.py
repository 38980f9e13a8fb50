"""Corner detection: ask the vision model for the canvas corners, then rectify.

On success the original photo is warped into `<base>_final.jpg` and the record
gets `manual_corners` (pixel pairs) and `image_dimensions` alongside the
sub-record's `corners`, `corners_used` and `output_dimensions`.
"""

from __future__ import annotations

import io
import logging
from typing import Any, Dict, Tuple

from PIL import Image

from atelier.extractor import extract_json, has_four_corners
from atelier.geometry import derive_corners, rectify
from atelier.predictions import image_to_data_uri
from atelier.schemas import Prediction
from atelier.tasks import PredictionTask, TaskContext, TaskFailure
from atelier.utils import output_text, to_iso
from storage.paths import final_image_target, original_image, variant_artifacts, write_bytes_atomic

logger = logging.getLogger(__name__)

PROMPT = """Analyze this image and identify the four corners of the painting canvas \
(excluding frame, wall, mat, glass and shadows).

Return the coordinates as percentages of the image size in JSON:
{
  "corners": [
    {"x": 10.5, "y": 15.2, "label": "top-left"},
    {"x": 89.3, "y": 14.8, "label": "top-right"},
    {"x": 88.7, "y": 85.1, "label": "bottom-right"},
    {"x": 11.2, "y": 84.9, "label": "bottom-left"}
  ]
}

x is the horizontal position (0-100) of the image width, y the vertical
position (0-100) of the image height. Keep the order top-left, top-right,
bottom-right, bottom-left.

Return ONLY valid JSON, no other text."""

JPEG_QUALITY = 92


class CornerDetection(PredictionTask):
    name = "ai_corners"
    path = ("ai_corners",)

    def model(self, ctx: TaskContext) -> str:
        return ctx.settings.corners_model

    def build_input(self, ctx: TaskContext, item: str, record: Dict[str, Any]) -> Dict[str, Any]:
        src = original_image(ctx.images_dir, item)
        if src is None:
            raise TaskFailure("source_image_missing", f"no original photo for {item}", requeue=False)
        return {
            "images": [image_to_data_uri(src)],
            "prompt": PROMPT,
            "temperature": 1,
            "thinking_level": "low",
            "top_p": 0.95,
            "videos": [],
        }

    def finish(self, ctx: TaskContext, item: str, record: Dict[str, Any],
               sub: Dict[str, Any], prediction: Prediction) -> Tuple[Dict[str, Any], Dict[Any, Any]]:
        text = output_text(prediction.output)
        extraction = extract_json(text, has_four_corners)
        if not extraction.ok:
            raise TaskFailure("malformed_output", extraction.error,
                              updates={"output_text": extraction.raw})

        src = original_image(ctx.images_dir, item)
        if src is None:
            raise TaskFailure("source_image_missing", f"no original photo for {item}", requeue=False)

        offset = sub.get("offset_percent")
        if offset is None:
            offset = ctx.settings.default_offset_percent
        try:
            with Image.open(src) as im:
                width, height = im.size
                corner_set = derive_corners(extraction.data["corners"], width, height, offset)
                out_w, out_h = corner_set.output_size()
                rectified = rectify(im, corner_set, (out_w, out_h))
        except OSError as e:
            raise TaskFailure("source_image_missing", f"cannot read {src.name}: {e}", requeue=False)

        buf = io.BytesIO()
        rectified.convert("RGB").save(buf, format="JPEG", quality=JPEG_QUALITY)
        target = final_image_target(ctx.images_dir, item)
        try:
            write_bytes_atomic(target, buf.getvalue())
        except OSError as e:
            raise TaskFailure("output_write_failed", str(e))
        logger.info("[corners %s] wrote %s (%dx%d)", item, target.name, out_w, out_h)

        payload = {
            "corners": extraction.data["corners"],
            "corners_used": corner_set.to_dicts(),
            "offset_percent": corner_set.offset_percent,
            "output_dimensions": {"width": out_w, "height": out_h},
            "final_image": target.name,
            "extraction_strategy": extraction.strategy,
            "output_text": None,
        }
        extra: Dict[Any, Any] = {
            "manual_corners": corner_set.pixels(),
            "image_dimensions": {"width": width, "height": height},
        }
        if record.get("active_variants") and variant_artifacts(ctx.images_dir, item):
            # existing variants were composed from the previous final image
            extra["variant_regeneration"] = {
                "status": "wanted",
                "requested_at": to_iso(ctx.now()),
                "reason": "final_image_updated",
            }
        return payload, extra


__all__ = ["CornerDetection", "PROMPT"]
