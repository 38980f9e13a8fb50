"""Form fill: describe the painting (title, description, tags, size, date)."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from PIL import Image

from atelier.extractor import DEFAULT_STRATEGIES, extract_json, require_keys
from atelier.predictions import image_to_data_uri
from atelier.schemas import Prediction
from atelier.tasks import PredictionTask, TaskContext, TaskFailure
from atelier.utils import output_text, round_half_up
from storage.paths import final_image, original_image

logger = logging.getLogger(__name__)

FORM_FIELDS = ("title", "description", "tags", "width", "height", "date")
DATE_FORMAT = "%d.%m.%Y"
_DATE_RE = re.compile(r"^\d{2}\.\d{2}\.\d{4}$")
RATIO_TOLERANCE = 0.2

PROMPT = """Analyze this painting and describe its content for art lovers. Focus on \
what is actually visible: people, objects, scenes, colours.

Write every text value in {language}. Return a JSON object with:
- title: a descriptive title (2-8 words)
- description: what the painting shows (2-3 sentences, content only)
- tags: relevant tags, comma separated
- width: estimated width in cm (string)
- height: estimated height in cm (string); if the image is taller than wide, height must be greater than width
- date: creation date as dd.mm.yyyy if visible, otherwise empty

Answer ONLY with a JSON object in this format:
{{
  "title": "Title",
  "description": "Description",
  "tags": "tag1, tag2, tag3",
  "width": "80",
  "height": "60",
  "date": "15.03.2024"
}}"""

_LABEL_STOP = r"(?=\n\s*\n|\n\s*[*\-]*\s*(?:title|description|tags|date|datum|width|height|size)\b|\Z)"
_LABELLED = {
    "title": re.compile(r"title[*\s]*[:\-]?[*\s]*([^\n]+)", re.I),
    "description": re.compile(r"description[*\s]*[:\-]?[*\s]*(.+?)" + _LABEL_STOP, re.I | re.S),
    "tags": re.compile(r"tags[*\s]*[:\-]?[*\s]*([^\n]+)", re.I),
    "date": re.compile(r"(?:date|datum)[*\s]*[:\-]?[*\s]*([^\n]+)", re.I),
}
_DIMENSIONS = re.compile(r"(\d+)\s*(?:cm)?\s*[x×]\s*(\d+)", re.I)


def labelled_fields(text: str) -> Optional[Dict[str, Any]]:
    """Last-resort strategy for prose answers (`Title: ...` lines)."""
    found: Dict[str, Any] = {}
    for key, pattern in _LABELLED.items():
        m = pattern.search(text)
        found[key] = m.group(1).strip().strip('"*') if m else ""
    if not found["title"]:
        return None
    m = _DIMENSIONS.search(text)
    found["width"], found["height"] = (m.group(1), m.group(2)) if m else ("", "")
    found["parsing_method"] = "fallback"
    return found


FORM_STRATEGIES = DEFAULT_STRATEGIES + (("labelled_lines", labelled_fields),)


def normalize_date(value: Any, today: datetime) -> str:
    s = str(value or "").strip()
    return s if _DATE_RE.match(s) else today.strftime(DATE_FORMAT)


def _to_number(value: str) -> float:
    m = re.search(r"\d+(?:[.,]\d+)?", value)
    return float(m.group(0).replace(",", ".")) if m else 0.0


def correct_dimensions(width: str, height: str, image_w: int | None, image_h: int | None) -> Tuple[str, str]:
    """Make the estimated size agree with the photo's orientation and ratio.

    Orientation mismatches are swapped; otherwise the height is recomputed
    from the width when the ratios differ by more than `RATIO_TOLERANCE`.
    """
    if not width or not height or not image_w or not image_h:
        return width, height
    w, h = _to_number(width), _to_number(height)
    if w <= 0 or h <= 0:
        return width, height
    image_ratio = image_w / image_h
    if abs(image_ratio - w / h) <= RATIO_TOLERANCE:
        return width, height
    portrait = image_h > image_w
    landscape = image_w > image_h
    if (portrait and w >= h) or (landscape and h >= w):
        w, h = h, w
    else:
        h = w / image_ratio
    return str(round_half_up(w)), str(round_half_up(h))


def _text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v).strip() for v in value if str(v).strip())
    return "" if value is None else str(value).strip()


class FormFill(PredictionTask):
    name = "ai_fill_form"
    path = ("ai_fill_form",)

    def model(self, ctx: TaskContext) -> str:
        return ctx.settings.form_model

    def _source(self, ctx: TaskContext, item: str):
        return final_image(ctx.images_dir, item) or original_image(ctx.images_dir, item)

    def build_input(self, ctx: TaskContext, item: str, record: Dict[str, Any]) -> Dict[str, Any]:
        src = self._source(ctx, item)
        if src is None:
            raise TaskFailure("source_image_missing", f"no image for {item}", requeue=False)
        return {
            "images": [image_to_data_uri(src)],
            "max_output_tokens": 65535,
            "prompt": PROMPT.format(language=ctx.settings.form_language),
            "temperature": 1,
            "thinking_level": "low",
            "top_p": 0.95,
            "videos": [],
        }

    def _image_size(self, ctx: TaskContext, item: str, record: Dict[str, Any]) -> Tuple[int | None, int | None]:
        src = self._source(ctx, item)
        if src is not None:
            try:
                with Image.open(src) as im:
                    return im.size
            except OSError as e:
                logger.warning("[form %s] cannot read %s: %s", item, src.name, e)
        dims = record.get("image_dimensions")
        if not isinstance(dims, dict):
            return None, None
        return dims.get("width"), dims.get("height")

    def finish(self, ctx: TaskContext, item: str, record: Dict[str, Any],
               sub: Dict[str, Any], prediction: Prediction) -> Tuple[Dict[str, Any], Dict[Any, Any]]:
        text = output_text(prediction.output)
        extraction = extract_json(text, require_keys("title", "description"), FORM_STRATEGIES)
        if not extraction.ok:
            raise TaskFailure("malformed_output", extraction.error,
                              updates={"output_text": extraction.raw})

        data = extraction.data
        fields = {key: _text(data.get(key)) for key in FORM_FIELDS}
        fields["date"] = normalize_date(fields["date"], ctx.now())
        image_w, image_h = self._image_size(ctx, item, record)
        fields["width"], fields["height"] = correct_dimensions(fields["width"], fields["height"], image_w, image_h)

        payload = {
            "extracted_data": fields,
            "parsing_method": data.get("parsing_method", "json"),
            "extraction_strategy": extraction.strategy,
            "output_text": None,
        }
        # display fields an editor already filled in stay untouched
        extra = {key: value for key, value in fields.items() if value and not record.get(key)}
        return payload, extra


__all__ = ["FormFill", "labelled_fields", "normalize_date", "correct_dimensions", "FORM_STRATEGIES"]
