"""Recover a JSON object from free-form model text.

Model answers arrive wrapped in prose, Markdown fences, token-joining
artifacts (`12 . 5`, `"y" "\\":`) or cut off mid-object. `extract_json` runs an
ordered list of pure strategies (`text -> dict | None`) and returns the first
result that satisfies the caller's validator. It never raises; failures come
back as an `Extraction` with `ok=False` and the first 1000 characters of input.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

Strategy = Callable[[str], Optional[Dict[str, Any]]]
Validator = Callable[[Dict[str, Any]], bool]

RAW_EXCERPT_CHARS = 1000

_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\r?\n?(.*?)```", re.S)
_OPEN_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\r?\n?(.*)$", re.S)

# Order matters: split keys/values/numbers first, then whitespace inside numbers,
# then leftover duplicated quotes.
REPAIRS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r'"(\w+)"\s*"\s*\\?":'), r'"\1":'),
    (re.compile(r':\s*"\s*"([^"]+)"'), r': "\1"'),
    (re.compile(r':\s*(\d+)"\s*"(\d+\.\d+)'), r': \1\2'),
    (re.compile(r':\s*(\d+\.\d+)"\s*"(\d+)'), r': \1\2'),
    (re.compile(r'(\d+)\s+\.\s*(\d+)'), r'\1.\2'),
    (re.compile(r'(\d+)\s*\.\s+(\d+)'), r'\1.\2'),
    (re.compile(r'(\d+)\s+(\d+\.\d+)'), r'\1\2'),
    (re.compile(r'(\d+\.\d+)\s+(\d+)'), r'\1\2'),
    (re.compile(r'"\s+"([^"]+)"'), r'"\1"'),
)


@dataclass(frozen=True)
class Extraction:
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    strategy: str | None = None
    error: str | None = None
    raw: str = ""


def repair(text: str) -> str:
    for pattern, repl in REPAIRS:
        text = pattern.sub(repl, text)
    return text


def _strip_keys(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k).strip(): _strip_keys(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_strip_keys(v) for v in obj]
    return obj


def loads_lenient(candidate: str | None) -> Optional[Dict[str, Any]]:
    """Parse as-is, then once more after the repair passes. Objects only."""
    if not candidate or not candidate.strip():
        return None
    for text in (candidate, repair(candidate)):
        try:
            data = json.loads(text)
        except ValueError:
            continue
        if isinstance(data, dict):
            return _strip_keys(data)
    return None


def find_fenced(text: str) -> Optional[str]:
    """Body of the first Markdown code fence (an unclosed fence runs to the end)."""
    m = _FENCE_RE.search(text) or _OPEN_FENCE_RE.search(text)
    return m.group(1) if m else None


def find_balanced_object(text: str) -> Optional[str]:
    """First balanced `{...}` span, ignoring braces inside quoted strings.

    Either quote character opens a string that only the same character closes;
    a backslash skips exactly one following character.
    """
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    quote: str | None = None
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if quote:
            if ch == "\\":
                escape = True
            elif ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def fenced_object(text: str) -> Optional[Dict[str, Any]]:
    body = find_fenced(text)
    if body is None:
        return None
    return loads_lenient(find_balanced_object(body)) or loads_lenient(body)


def first_object(text: str) -> Optional[Dict[str, Any]]:
    return loads_lenient(find_balanced_object(text))


def whole_text(text: str) -> Optional[Dict[str, Any]]:
    return loads_lenient(text.strip())


def truncated_object(text: str) -> Optional[Dict[str, Any]]:
    """Close an object the model stopped emitting half way.

    Tries the text with its open brackets closed, then backs off to the last
    few top-level-or-nested commas so a half-written element is dropped.
    """
    start = text.find("{")
    if start < 0:
        return None
    stack: list[str] = []
    quote: str | None = None
    escape = False
    cuts: list[tuple[int, str]] = []
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if quote:
            if ch == "\\":
                escape = True
            elif ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            if not stack:
                # a complete object exists; the other strategies own that case
                return None
        elif ch == ",":
            cuts.append((i, "".join(reversed(stack))))
    if not stack:
        return None
    attempts: list[str] = []
    if quote is None:
        attempts.append(text[start:].rstrip().rstrip(",") + "".join(reversed(stack)))
    for pos, closers in reversed(cuts[-3:]):
        attempts.append(text[start:pos] + closers)
    for candidate in attempts:
        data = loads_lenient(candidate)
        if data is not None:
            return data
    return None


DEFAULT_STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("fenced", fenced_object),
    ("balanced", first_object),
    ("whole_text", whole_text),
    ("truncated", truncated_object),
)


def extract_json(
    text: str | None,
    validator: Validator | None = None,
    strategies: Sequence[Tuple[str, Strategy]] = DEFAULT_STRATEGIES,
) -> Extraction:
    """Return the first strategy result accepted by `validator`."""
    raw = text or ""
    if not raw.strip():
        return Extraction(ok=False, error="empty_output", raw="")
    rejected = False
    for name, strategy in strategies:
        data = strategy(raw)
        if data is None:
            continue
        if validator is not None and not validator(data):
            rejected = True
            continue
        return Extraction(ok=True, data=data, strategy=name)
    return Extraction(
        ok=False,
        error="validation_failed" if rejected else "no_json_found",
        raw=raw[:RAW_EXCERPT_CHARS],
    )


# -----------------
# Validators
# -----------------

def require_keys(*keys: str) -> Validator:
    def _check(data: Dict[str, Any]) -> bool:
        return all(k in data for k in keys)
    return _check


def _is_number(v: Any) -> bool:
    if isinstance(v, bool):
        return False
    if isinstance(v, (int, float)):
        return True
    try:
        float(str(v).strip())
        return True
    except ValueError:
        return False


def has_four_corners(data: Dict[str, Any]) -> bool:
    corners = data.get("corners")
    if not isinstance(corners, list) or len(corners) != 4:
        return False
    return all(
        isinstance(c, dict) and _is_number(c.get("x")) and _is_number(c.get("y"))
        for c in corners
    )


__all__ = [
    "Extraction",
    "DEFAULT_STRATEGIES",
    "extract_json",
    "repair",
    "loads_lenient",
    "find_fenced",
    "find_balanced_object",
    "fenced_object",
    "first_object",
    "whole_text",
    "truncated_object",
    "require_keys",
    "has_four_corners",
]
