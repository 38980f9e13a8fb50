"""Percentage corners -> pixel corners -> rectified painting.

Corners always travel in the order top-left, top-right, bottom-right,
bottom-left.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
from PIL import Image

from atelier.utils import round_half_up

LABELS = ("top-left", "top-right", "bottom-right", "bottom-left")
# inward direction per corner, same order as LABELS
OFFSET_SIGNS = ((1, 1), (-1, 1), (-1, -1), (1, -1))
MAX_OFFSET_PERCENT = 10.0
MIN_OUTPUT_SIDE = 64


class GeometryError(ValueError):
    """Corner data that cannot describe a quadrilateral on this image."""


@dataclass(frozen=True)
class Corner:
    x: int
    y: int
    x_percent: float
    y_percent: float
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x": self.x,
            "y": self.y,
            "x_percent": self.x_percent,
            "y_percent": self.y_percent,
            "label": self.label,
        }


@dataclass(frozen=True)
class CornerSet:
    corners: Tuple[Corner, Corner, Corner, Corner]
    image_width: int
    image_height: int
    offset_percent: float
    painting_width: float
    painting_height: float

    def pixels(self) -> List[List[int]]:
        return [[c.x, c.y] for c in self.corners]

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.corners]

    def output_size(self, min_side: int = MIN_OUTPUT_SIDE) -> Tuple[int, int]:
        """Rectified size: the longer of each pair of opposite edges."""
        top, right, bottom, left = edges([(c.x, c.y) for c in self.corners])
        w = max(round_half_up(max(top, bottom)), min_side)
        h = max(round_half_up(max(left, right)), min_side)
        return w, h


def clamp_offset(offset_percent: Any) -> float:
    try:
        v = float(offset_percent)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v):
        return 0.0
    return max(0.0, min(MAX_OFFSET_PERCENT, v))


def _number(value: Any, what: str) -> float:
    if value is None or isinstance(value, bool):
        raise GeometryError(f"missing {what}")
    try:
        v = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        raise GeometryError(f"non-numeric {what}: {value!r}")
    if math.isnan(v) or math.isinf(v):
        raise GeometryError(f"non-finite {what}")
    return v


def parse_percent_corners(raw: Any) -> List[Tuple[float, float, str]]:
    """Validate model output `[{x, y, label}, ...]` into `(x%, y%, label)` tuples."""
    if not isinstance(raw, (list, tuple)):
        raise GeometryError("corners must be a list")
    if len(raw) != 4:
        raise GeometryError(f"expected 4 corners, got {len(raw)}")
    out = []
    for i, c in enumerate(raw):
        if not isinstance(c, dict):
            raise GeometryError(f"corner {i} is not an object")
        c = {str(k).strip(): v for k, v in c.items()}
        x = _number(c.get("x"), f"x on corner {i}")
        y = _number(c.get("y"), f"y on corner {i}")
        label = str(c.get("label") or LABELS[i])
        out.append((x, y, label))
    return out


def to_pixels(corners: Sequence[Tuple[float, float, str]], width: int, height: int) -> List[Tuple[int, int]]:
    return [
        (round_half_up(x / 100.0 * width), round_half_up(y / 100.0 * height))
        for x, y, _ in corners
    ]


def edges(points: Sequence[Tuple[float, float]]) -> Tuple[float, float, float, float]:
    """Lengths of the top, right, bottom and left edges."""
    tl, tr, br, bl = points
    return (
        math.dist(tl, tr),
        math.dist(tr, br),
        math.dist(bl, br),
        math.dist(tl, bl),
    )


def painting_size(points: Sequence[Tuple[float, float]]) -> Tuple[float, float]:
    """Estimated painting size: averaged opposite edges."""
    top, right, bottom, left = edges(points)
    return (top + bottom) / 2.0, (left + right) / 2.0


def derive_corners(raw: Any, width: int, height: int, offset_percent: Any = 1.0) -> CornerSet:
    """Full corner derivation for an image of `width` x `height` pixels.

    Pixels are rounded half-up, moved inward by `offset_percent` of the averaged
    painting size, clamped to the image, and their percentages recomputed.
    """
    if not width or not height or width <= 0 or height <= 0:
        raise GeometryError(f"invalid image dimensions {width}x{height}")
    parsed = parse_percent_corners(raw)
    offset = clamp_offset(offset_percent)
    pixels = to_pixels(parsed, width, height)
    pw, ph = painting_size(pixels)
    dx = offset / 100.0 * pw
    dy = offset / 100.0 * ph

    out = []
    for (px, py), (sx, sy), (_, _, label) in zip(pixels, OFFSET_SIGNS, parsed):
        x = max(0, min(width - 1, round_half_up(px + sx * dx)))
        y = max(0, min(height - 1, round_half_up(py + sy * dy)))
        out.append(Corner(
            x=x,
            y=y,
            x_percent=x / width * 100.0,
            y_percent=y / height * 100.0,
            label=label,
        ))
    return CornerSet(
        corners=tuple(out),  # type: ignore[arg-type]
        image_width=width,
        image_height=height,
        offset_percent=offset,
        painting_width=pw,
        painting_height=ph,
    )


# -----------------
# Rectification
# -----------------

def perspective_coefficients(target: Sequence[Tuple[float, float]],
                             source: Sequence[Tuple[float, float]]) -> List[float]:
    """Coefficients for `Image.transform(..., Image.PERSPECTIVE, ...)`.

    PIL maps each *output* pixel back to the input, so `target` are the output
    rectangle corners and `source` the quadrilateral in the photo.
    """
    rows = []
    rhs = []
    for (x, y), (u, v) in zip(target, source):
        rows.append([x, y, 1, 0, 0, 0, -u * x, -u * y])
        rows.append([0, 0, 0, x, y, 1, -v * x, -v * y])
        rhs.extend([u, v])
    a = np.array(rows, dtype=float)
    b = np.array(rhs, dtype=float)
    if np.linalg.matrix_rank(a) < 8:
        raise GeometryError("degenerate corner quadrilateral")
    return np.linalg.solve(a, b).tolist()


def rectify(image: Image.Image, corner_set: CornerSet, size: Tuple[int, int] | None = None) -> Image.Image:
    w, h = size or corner_set.output_size()
    target = [(0, 0), (w, 0), (w, h), (0, h)]
    source = [(c.x, c.y) for c in corner_set.corners]
    coeffs = perspective_coefficients(target, source)
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    return image.transform((w, h), Image.Transform.PERSPECTIVE, coeffs, Image.Resampling.BICUBIC)


__all__ = [
    "LABELS",
    "GeometryError",
    "Corner",
    "CornerSet",
    "clamp_offset",
    "parse_percent_corners",
    "to_pixels",
    "edges",
    "painting_size",
    "derive_corners",
    "perspective_coefficients",
    "rectify",
]
