import os, re, glob, tempfile
from pathlib import Path
from typing import List, Optional

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "webp")
_META_RE = re.compile(r"^(?P<base>.+)_original\.(?P<ext>jpe?g|png|webp)\.json$", re.IGNORECASE)


def write_bytes_atomic(path: str | Path, data: bytes) -> Path:
    """Write via a sibling temp file + fsync + rename so readers never see half a file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
    return path


def base_from_meta_name(name: str) -> Optional[str]:
    """Return the item base name for `<base>_original.<ext>.json`, else None."""
    m = _META_RE.match(name)
    return m.group("base") if m else None


def list_items(root: str | Path, limit: int | None = None) -> List[str]:
    """Base names of every item with a metadata record, in name order."""
    names = sorted(os.path.basename(p) for p in glob.glob(os.path.join(str(root), "*.json")))
    out = []
    for n in names:
        base = base_from_meta_name(n)
        if base and base not in out:
            out.append(base)
    return out[:limit] if limit else out


def _find_by_stem_prefix(root: str | Path, prefix: str) -> Optional[Path]:
    root = Path(root)
    if not root.is_dir():
        return None
    for p in sorted(root.iterdir()):
        if not p.is_file() or p.suffix.lower() == ".json":
            continue
        if p.stem.startswith(prefix) and "_thumb" not in p.stem:
            return p
    return None


def original_image(root: str | Path, base: str) -> Optional[Path]:
    for ext in IMAGE_EXTENSIONS:
        p = Path(root) / f"{base}_original.{ext}"
        if p.is_file():
            return p
    return _find_by_stem_prefix(root, f"{base}_original")


def final_image(root: str | Path, base: str) -> Optional[Path]:
    return _find_by_stem_prefix(root, f"{base}_final")


def final_image_target(root: str | Path, base: str) -> Path:
    return Path(root) / f"{base}_final.jpg"


def meta_path(root: str | Path, base: str) -> Path:
    """Metadata lives next to the original photo as `<original>.json`."""
    orig = original_image(root, base)
    if orig is not None:
        return orig.with_name(orig.name + ".json")
    for ext in IMAGE_EXTENSIONS:
        p = Path(root) / f"{base}_original.{ext}.json"
        if p.is_file():
            return p
    return Path(root) / f"{base}_original.jpg.json"


def variant_path(root: str | Path, base: str, name: str) -> Path:
    return Path(root) / f"{base}_variant_{name}.jpg"


def variant_artifacts(root: str | Path, base: str) -> dict[str, Path]:
    """Map variant name -> artifact path for every variant file of `base` (thumbnails excluded)."""
    pattern = re.compile(r"^" + re.escape(base) + r"_variant_(.+)$")
    out: dict[str, Path] = {}
    root = Path(root)
    if not root.is_dir():
        return out
    for p in sorted(root.iterdir()):
        if not p.is_file() or p.suffix.lower() == ".json" or "_thumb" in p.stem:
            continue
        m = pattern.match(p.stem)
        if m:
            out.setdefault(m.group(1), p)
    return out


def thumbnail_path(path: str | Path) -> Path:
    p = Path(path)
    return p.with_name(f"{p.stem}_thumb{p.suffix}")


def variant_template(variants_root: str | Path, name: str) -> Optional[Path]:
    for ext in IMAGE_EXTENSIONS:
        p = Path(variants_root) / f"{name}.{ext}"
        if p.is_file():
            return p
    return None
