"""Durable per-item metadata records with dotted-path partial updates.

One JSON document per item is the single source of truth for its task state.
Records are only ever changed through `merge` / `apply_patch`, which re-read the
file immediately before writing and replace it atomically (temp file + rename).
Two concurrent merges touching different sub-paths can still lose one update;
that weak consistency is accepted because executions are short and task types
avoid writing the same sub-path at once.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, Tuple, Union

from storage.paths import meta_path, write_bytes_atomic

logger = logging.getLogger(__name__)

PathLike = Union[str, Sequence[str]]


class MergeStrategy(str, Enum):
    MERGE = "merge"      # shallow key union for mapping values
    REPLACE = "replace"  # overwrite the value at the path
    DELETE = "delete"    # remove the key at the path


class MetadataWriteError(OSError):
    """The record could not be written; callers must surface this."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"cannot write metadata {path}: {reason}")
        self.path = path
        self.reason = reason


def split_path(path: PathLike) -> Tuple[str, ...]:
    """Dotted string or explicit tuple of keys -> tuple of keys."""
    if isinstance(path, str):
        parts = tuple(p for p in path.split(".") if p)
    else:
        parts = tuple(str(p) for p in path)
    if not parts:
        raise ValueError("empty metadata path")
    return parts


def apply_update(record: Dict[str, Any], path: PathLike, value: Any,
                 strategy: MergeStrategy = MergeStrategy.MERGE) -> Dict[str, Any]:
    """Apply one update to `record` in place and return it.

    Intermediate objects are created as needed (a non-mapping intermediate is
    replaced by a mapping).
    """
    keys = split_path(path)
    node = record
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            if strategy is MergeStrategy.DELETE:
                return record
            child = {}
            node[key] = child
        node = child
    leaf = keys[-1]
    if strategy is MergeStrategy.DELETE:
        node.pop(leaf, None)
    elif strategy is MergeStrategy.MERGE and isinstance(value, dict) and isinstance(node.get(leaf), dict):
        node[leaf] = {**node[leaf], **value}
    else:
        node[leaf] = value
    return record


def get_path(record: Mapping[str, Any], path: PathLike, default: Any = None) -> Any:
    node: Any = record
    for key in split_path(path):
        if not isinstance(node, Mapping) or key not in node:
            return default
        node = node[key]
    return node


def _atomic_write_json(path: Path, obj: Any) -> None:
    write_bytes_atomic(path, json.dumps(obj, ensure_ascii=False, indent=2).encode("utf-8"))


class MetadataStore:
    """File-backed store: one `<base>_original.<ext>.json` per item under `root`."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, item_id: str) -> Path:
        return meta_path(self.root, item_id)

    def exists(self, item_id: str) -> bool:
        return self.path_for(item_id).is_file()

    def read(self, item_id: str) -> Dict[str, Any]:
        """Current record; a missing, unreadable or corrupt file reads as `{}`."""
        p = self.path_for(item_id)
        if not p.is_file():
            return {}
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("[metadata %s] unreadable record treated as empty: %s", item_id, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("[metadata %s] record is not an object; treated as empty", item_id)
            return {}
        return data

    def create(self, item_id: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Write a brand-new record. Existing records are left untouched."""
        if self.exists(item_id):
            return self.read(item_id)
        rec = dict(record)
        self._write(item_id, rec)
        return rec

    def merge(self, item_id: str, updates: Mapping[PathLike, Any], *, merge_maps: bool = True) -> Dict[str, Any]:
        """Apply `{path: value}` updates against a fresh read and persist.

        Mapping values are unioned key-by-key with what is already stored unless
        `merge_maps` is False. Returns the record as written.
        """
        strategy = MergeStrategy.MERGE if merge_maps else MergeStrategy.REPLACE
        record = self.read(item_id)
        for path, value in updates.items():
            apply_update(record, path, value, strategy)
        self._write(item_id, record)
        return record

    def apply_patch(self, item_id: str, path: PathLike, value: Any = None,
                    strategy: MergeStrategy = MergeStrategy.MERGE) -> Dict[str, Any]:
        record = self.read(item_id)
        apply_update(record, path, value, MergeStrategy(strategy))
        self._write(item_id, record)
        return record

    def _write(self, item_id: str, record: Dict[str, Any]) -> None:
        p = self.path_for(item_id)
        try:
            _atomic_write_json(p, record)
        except OSError as e:
            raise MetadataWriteError(p, str(e)) from e
