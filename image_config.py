"""
Configuration for the image pipeline (optimiser + wiring).

Every knob the two stages share lives on PipelineConfig and is passed
explicitly to the components. Defaults match the site layout; an optional
JSON file at the project root (image-pipeline.json) overrides fields by name.
"""

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

CONFIG_FILENAME = "image-pipeline.json"

DEFAULT_WIDTHS = (320, 480, 640, 960, 1280, 1600, 1920)

DEFAULT_SIZES_BY_CLASS = (
    ("header__logo-img", "(max-width: 56.25em) 45px, 50px"),
    ("home-hero__social-icon", "50px"),
    ("main-footer__icon", "25px"),
    ("projects__row-img", "(max-width: 56.25em) 100vw, 60vw"),
    ("project-details__showcase-img", "(max-width: 56.25em) 100vw, 90rem"),
    ("project-details__overview-icon-img", "(max-width: 37.5em) 70vw, 220px"),
)

DEFAULT_DOCUMENTS = (
    "index.html",
    "project-1.html",
    "project-2.html",
    "project-3.html",
    "project-4.html",
    "project-5.html",
    "project-6.html",
    "jtc-gallery.html",
    "slides.html",
)

DEFAULT_STYLESHEETS = ("css/style.css",)


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class EncodingSpec:
    """One output encoding. Order in PipelineConfig.encodings is priority order."""
    ext: str
    mime_type: str
    quality: int
    effort: Optional[int] = None


DEFAULT_ENCODINGS = (
    EncodingSpec("avif", "image/avif", quality=55, effort=6),
    EncodingSpec("webp", "image/webp", quality=75, effort=6),
)


@dataclass(frozen=True)
class PipelineConfig:
    root: Path = field(default_factory=Path.cwd)
    asset_dir: str = "assets"
    output_dir: str = "assets/optimized"
    manifest_name: str = "manifest.json"
    source_extensions: Tuple[str, ...] = (".png", ".jpg", ".jpeg")
    widths: Tuple[int, ...] = DEFAULT_WIDTHS
    encodings: Tuple[EncodingSpec, ...] = DEFAULT_ENCODINGS
    sizes_by_class: Tuple[Tuple[str, str], ...] = DEFAULT_SIZES_BY_CLASS
    documents: Tuple[str, ...] = DEFAULT_DOCUMENTS
    stylesheets: Tuple[str, ...] = DEFAULT_STYLESHEETS
    css_lookahead: int = 200

    @property
    def asset_root(self) -> Path:
        return self.root / self.asset_dir

    @property
    def output_root(self) -> Path:
        return self.root / self.output_dir

    @property
    def manifest_path(self) -> Path:
        return self.output_root / self.manifest_name

    @property
    def encoding_exts(self) -> List[str]:
        return [e.ext for e in self.encodings]

    def sizes_for_classes(self, classes: Sequence[str]) -> Optional[str]:
        for class_name, sizes in self.sizes_by_class:
            if class_name in classes:
                return sizes
        return None


def parse_variant_widths(s: str) -> Tuple[int, ...]:
    try:
        widths = sorted({int(x.strip()) for x in s.split(",") if x.strip()})
    except ValueError:
        raise ConfigError(f"Invalid widths {s!r}. Example: 320,640,1280")
    return tuple(w for w in widths if w > 0)


def _str_tuple(name: str, value: Any) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ConfigError(f"{name} must be a list of non-empty strings")
    return tuple(value)


def _parse_encodings(value: Any) -> Tuple[EncodingSpec, ...]:
    if not isinstance(value, list) or not value:
        raise ConfigError("encodings must be a non-empty list")
    out = []
    for item in value:
        if not isinstance(item, dict) or not isinstance(item.get("ext"), str):
            raise ConfigError(f"Invalid encoding entry: {item!r}")
        ext = item["ext"].lower().lstrip(".")
        try:
            quality = int(item.get("quality", 75))
            effort = int(item["effort"]) if item.get("effort") is not None else None
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid quality/effort for encoding {ext}")
        out.append(EncodingSpec(ext, item.get("mime_type") or f"image/{ext}", quality, effort))
    return tuple(out)


def _parse_sizes(value: Any) -> Tuple[Tuple[str, str], ...]:
    """
    Accepts either an object {"class": "sizes", ...} (insertion order kept)
    or a list of [class, sizes] pairs.
    """
    if isinstance(value, dict):
        items = list(value.items())
    elif isinstance(value, list):
        items = value
    else:
        raise ConfigError("sizes_by_class must be an object or a list of pairs")
    out = []
    for pair in items:
        if not isinstance(pair, (list, tuple)) or len(pair) != 2 or not all(isinstance(p, str) and p for p in pair):
            raise ConfigError(f"Invalid sizes_by_class entry: {pair!r}")
        out.append((pair[0], pair[1]))
    return tuple(out)


def _overrides_from(data: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key in ("asset_dir", "output_dir", "manifest_name"):
        if key in data:
            if not isinstance(data[key], str) or not data[key].strip("/"):
                raise ConfigError(f"{key} must be a non-empty string")
            overrides[key] = data[key].strip("/")
    if "source_extensions" in data:
        exts = _str_tuple("source_extensions", data["source_extensions"])
        overrides["source_extensions"] = tuple(
            e.lower() if e.startswith(".") else f".{e.lower()}" for e in exts
        )
    if "widths" in data:
        widths = data["widths"]
        if isinstance(widths, str):
            overrides["widths"] = parse_variant_widths(widths)
        elif isinstance(widths, list) and all(isinstance(w, int) for w in widths):
            overrides["widths"] = tuple(sorted({w for w in widths if w > 0}))
        else:
            raise ConfigError("widths must be a list of integers")
    if "encodings" in data:
        overrides["encodings"] = _parse_encodings(data["encodings"])
    if "sizes_by_class" in data:
        overrides["sizes_by_class"] = _parse_sizes(data["sizes_by_class"])
    for key in ("documents", "stylesheets"):
        if key in data:
            overrides[key] = _str_tuple(key, data[key])
    if "css_lookahead" in data:
        if not isinstance(data["css_lookahead"], int) or data["css_lookahead"] <= 0:
            raise ConfigError("css_lookahead must be a positive integer")
        overrides["css_lookahead"] = data["css_lookahead"]
    return overrides


def load_config(root: Path, config_path: Optional[Path] = None, **overrides: Any) -> PipelineConfig:
    """
    Build the config for a project root. The JSON file is optional unless
    given explicitly; keyword overrides (from the CLI) win over the file.
    None-valued overrides are ignored.
    """
    config = PipelineConfig(root=root)
    path = config_path or (root / CONFIG_FILENAME)
    if config_path is not None or path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigError(f"Cannot read config {path}: {e}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a JSON object")
        config = replace(config, **_overrides_from(data))
    explicit = {k: v for k, v in overrides.items() if v is not None}
    if explicit:
        config = replace(config, **explicit)
    if not config.widths:
        raise ConfigError("At least one variant width is required")
    return config
