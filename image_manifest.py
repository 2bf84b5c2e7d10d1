"""
Manifest of optimised image variants, shared by optimiser.py and wire_images.py.

Keys are forward-slash paths relative to the project root
(e.g. "assets/team/alex.jpg"). Variant paths are root-relative too and
carry their pixel width in a trailing "-<width>.<ext>" suffix.
"""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

# Transient and editor artefacts to ignore
TRANSIENT_SUFFIXES = {".swp", ".tmp", ".bak", ".part"}


class ManifestError(RuntimeError):
    pass


def is_transient(p: Path) -> bool:
    n = p.name
    return (
        n.startswith(".#")         # Emacs lockfiles
        or n.endswith("~")         # backup files
        or n == ".DS_Store"
        or p.suffix.lower() in TRANSIENT_SUFFIXES
    )


def to_posix(path: str) -> str:
    return path.replace(os.sep, "/")


def variant_name(stem: str, width: int, ext: str) -> str:
    return f"{stem}-{width}.{ext}"


def width_pattern(exts: Iterable[str]) -> "re.Pattern":
    alternatives = "|".join(re.escape(e) for e in exts)
    return re.compile(rf"-(\d+)\.(?:{alternatives})$", re.IGNORECASE)


def extract_width(src: str, exts: Iterable[str] = ("avif", "webp")) -> Optional[int]:
    m = width_pattern(exts).search(src)
    if not m:
        return None
    width = int(m.group(1))
    return width or None


@dataclass
class ImageRecord:
    width: int
    height: int
    sources: Dict[str, List[str]] = field(default_factory=dict)

    def has_encodings(self, exts: Iterable[str]) -> bool:
        return all(self.sources.get(ext) for ext in exts)

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height, "sources": self.sources}

    @classmethod
    def from_dict(cls, key: str, data: object) -> "ImageRecord":
        if not isinstance(data, dict):
            raise ManifestError(f"Manifest entry {key!r} is not an object")
        width, height = data.get("width"), data.get("height")
        if not isinstance(width, int) or not isinstance(height, int) or width <= 0 or height <= 0:
            raise ManifestError(f"Manifest entry {key!r} has no usable width/height")
        raw_sources = data.get("sources") or {}
        if not isinstance(raw_sources, dict):
            raise ManifestError(f"Manifest entry {key!r} has malformed sources")
        sources: Dict[str, List[str]] = {}
        for ext, paths in raw_sources.items():
            if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
                raise ManifestError(f"Manifest entry {key!r} has malformed {ext} sources")
            sources[ext] = list(paths)
        return cls(width=width, height=height, sources=sources)


Manifest = Dict[str, ImageRecord]


def manifest_to_json(manifest: Manifest) -> str:
    return json.dumps({k: v.to_dict() for k, v in manifest.items()}, indent=2) + "\n"


def load_manifest(path: Path) -> Manifest:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ManifestError(f"Manifest not found: {path}. Run optimiser.py first.")
    except OSError as e:
        raise ManifestError(f"Cannot read manifest {path}: {e}")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ManifestError(f"Manifest {path} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ManifestError(f"Manifest {path} must contain a JSON object")
    return {key: ImageRecord.from_dict(key, entry) for key, entry in data.items()}


def write_text_atomic(target: Path, text: str, encoding: str = "utf-8") -> None:
    tmp = target.with_suffix(target.suffix + ".tmp")
    with open(tmp, "w", encoding=encoding, newline="") as f:
        f.write(text)
    os.replace(tmp, target)


def save_manifest(path: Path, manifest: Manifest) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    write_text_atomic(path, manifest_to_json(manifest))


def read_text(path: Path) -> Tuple[str, str]:
    """
    Returns (text, encoding). Line endings are kept as-is so a document can
    be written back with write_text_atomic(path, text, encoding) unchanged.
    """
    raw = path.read_bytes()
    try:
        return raw.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        return raw.decode("latin-1"), "latin-1"
