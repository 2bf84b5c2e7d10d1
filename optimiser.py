#!/usr/bin/env python3
"""
Website Image Optimiser: responsive AVIF/WebP variants + manifest

- Finds every .png/.jpg/.jpeg under assets/ (skipping assets/optimized/).
- For each image, resizes to every ladder width not wider than the original,
  plus the original width itself, and encodes each size as AVIF and WebP.
- Writes variants to assets/optimized/<sub-path>/<stem>-<width>.<ext>.
- Writes assets/optimized/manifest.json: source path -> width, height and
  the variant paths per encoding, ascending by width.

One image failing (unreadable, encoder error) never stops the run; it is
reported and left out of the manifest. Run wire_images.py afterwards to point
HTML/CSS at the variants.

Requires: Python 3.9+, Pillow (ImageMagick optional, --backend imagemagick)
"""

import argparse
import concurrent.futures as cf
import os
import sys
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from image_backends import BackendNotFound, EncodeError, ImageBackend, get_backend
from image_config import ConfigError, PipelineConfig, load_config, parse_variant_widths
from image_manifest import (
    ImageRecord,
    Manifest,
    extract_width,
    is_transient,
    save_manifest,
    to_posix,
    variant_name,
)


def print_status(line: str) -> None:
    print(line, file=sys.stderr if line.startswith("ERR") else sys.stdout)


def pick_widths(original_width: int, ladder) -> List[int]:
    """Ladder widths that do not upscale, plus the original width."""
    widths = {w for w in ladder if 0 < w <= original_width}
    widths.add(original_width)
    return sorted(widths)


def needs_processing(src: Path, dst: Path, overwrite: bool) -> bool:
    if overwrite or not dst.exists():
        return True
    return src.stat().st_mtime > dst.stat().st_mtime


def rel_key(config: PipelineConfig, path: Path) -> str:
    return to_posix(os.path.relpath(path, config.root))


def output_dir_for(config: PipelineConfig, src: Path) -> Path:
    return config.output_root / src.parent.relative_to(config.asset_root)


def collect_images(config: PipelineConfig) -> List[Path]:
    """Every source raster under the asset root, outside the output tree, sorted by path."""
    output_root = config.output_root.resolve()
    images = []
    for p in config.asset_root.rglob("*"):
        if not p.is_file() or is_transient(p):
            continue
        if p.suffix.lower() not in config.source_extensions:
            continue
        resolved = p.resolve()
        if resolved == output_root or output_root in resolved.parents:
            continue
        images.append(p)
    return sorted(images, key=lambda p: rel_key(config, p))


def claim_outputs(config: PipelineConfig, images: List[Path]) -> Tuple[List[Path], List[Tuple[Path, Path]]]:
    """
    Split images into those that own their output stem and those whose
    variants would land on files already claimed by an earlier image
    (e.g. logo.png next to logo.jpg). Returns (unique, [(dupe, owner), ...]).
    """
    owners: Dict[str, Path] = {}
    unique: List[Path] = []
    clashes: List[Tuple[Path, Path]] = []
    for p in images:
        # lowercased so case-insensitive filesystems cannot collide either
        stem_key = str(output_dir_for(config, p) / p.stem).lower()
        if stem_key in owners:
            clashes.append((p, owners[stem_key]))
            continue
        owners[stem_key] = p
        unique.append(p)
    return unique, clashes


# ---------- Transcoder ----------

def transcode_image(
    src: Path,
    config: PipelineConfig,
    backend: ImageBackend,
    overwrite: bool = False,
    dry_run: bool = False,
) -> Tuple[Optional[Tuple[int, int, Dict[str, List[str]]]], List[str]]:
    """
    Returns ((width, height, sources), failures), or (None, []) when the
    image has no readable dimensions. Each width/encoding pair is encoded
    independently; failed pairs are listed in failures and left out of
    sources. Encodings with no surviving variant are dropped.
    """
    dims = backend.probe_dimensions(src)
    if not dims:
        return None, []
    width, height = dims
    widths = pick_widths(width, config.widths)
    out_dir = output_dir_for(config, src)

    produced: Dict[str, Dict[int, Path]] = {enc.ext: {} for enc in config.encodings}
    failures: List[str] = []

    with tempfile.TemporaryDirectory(prefix="optimiser-") as tmp:
        workdir = Path(tmp)
        for w in widths:
            pending = []
            for enc in config.encodings:
                dst = out_dir / variant_name(src.stem, w, enc.ext)
                if dry_run or not needs_processing(src, dst, overwrite):
                    produced[enc.ext][w] = dst
                else:
                    pending.append((enc, dst))
            if not pending:
                continue

            try:
                resized = backend.resize_to(src, w, workdir)
            except (EncodeError, OSError, ValueError) as e:
                failures.append(f"{w} resize: {e}")
                continue
            try:
                for enc, dst in pending:
                    try:
                        backend.encode(resized, dst, enc)
                    except (EncodeError, OSError) as e:
                        failures.append(f"{w} {enc.ext}: {e}")
                        continue
                    produced[enc.ext][w] = dst
            finally:
                backend.release(resized)

    sources = {
        ext: [rel_key(config, path) for _, path in sorted(by_width.items())]
        for ext, by_width in produced.items()
        if by_width
    }
    if not sources:
        return None, failures
    return (width, height, sources), failures


# ---------- Manifest builder ----------

def process_one(
    src: Path,
    config: PipelineConfig,
    backend: ImageBackend,
    overwrite: bool,
    dry_run: bool,
) -> Tuple[str, Optional[ImageRecord], List[str]]:
    """Returns (manifest key, record or None, status lines)."""
    key = rel_key(config, src)
    try:
        result, failures = transcode_image(src, config, backend, overwrite=overwrite, dry_run=dry_run)
    except Exception as e:
        return key, None, [f"ERR   {key}: {e}"]

    lines = [f"ERR   {key} {failure}" for failure in failures]
    if result is None:
        if failures:
            lines.append(f"ERR   {key}: no variants produced")
        else:
            lines.append(f"SKIP  {key}: could not read dimensions")
        return key, None, lines

    width, height, sources = result
    ws = sorted({extract_width(p, sources) for paths in sources.values() for p in paths})
    verb = "DRY  " if dry_run else "DONE "
    lines.append(f"{verb} {key} [{width}x{height}] -> {[f'{w}w' for w in ws]} ({', '.join(sources)})")
    return key, ImageRecord(width=width, height=height, sources=sources), lines


def build_manifest(
    config: PipelineConfig,
    backend: ImageBackend,
    threads: int = 1,
    overwrite: bool = False,
    dry_run: bool = False,
    emit: Callable[[str], None] = print_status,
) -> Manifest:
    images = collect_images(config)
    emit(f"Found {len(images)} image(s) in {config.asset_root}")
    images, clashes = claim_outputs(config, images)
    for dupe, owner in clashes:
        emit(f"ERR   {rel_key(config, dupe)}: variants would overwrite those of {rel_key(config, owner)}")

    results: Dict[str, ImageRecord] = {}
    with cf.ThreadPoolExecutor(max_workers=max(1, threads)) as ex:
        futures = [ex.submit(process_one, p, config, backend, overwrite, dry_run) for p in images]
        for fut in cf.as_completed(futures):
            key, record, lines = fut.result()
            for line in lines:
                emit(line)
            if record is not None:
                results[key] = record

    # Sorted so reruns produce the same file
    return {key: results[key] for key in sorted(results)}


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Generate responsive AVIF/WebP variants and manifest.json for assets/.")
    parser.add_argument("--root", default=".", help="Project root containing assets/")
    parser.add_argument("--config", default=None, help="JSON config (default: image-pipeline.json in root, if present)")
    parser.add_argument("--variant-widths", type=parse_variant_widths, default=None,
                        help="Comma-separated ladder widths (e.g. 320,640,1280)")
    parser.add_argument("--threads", type=int, default=os.cpu_count() or 4, help="Worker threads")
    parser.add_argument("--backend", choices=["pillow", "imagemagick"], default="pillow", help="Image backend")
    parser.add_argument("--imagemagick-bin", default=None, help='ImageMagick binary. For example "convert" or "magick"')
    parser.add_argument("--overwrite", action="store_true", help="Re-encode variants even if up to date")
    parser.add_argument("--dry-run", action="store_true", help="Show planned actions only")
    args = parser.parse_args(argv)

    root = Path(args.root).resolve()
    try:
        config = load_config(
            root,
            Path(args.config) if args.config else None,
            widths=args.variant_widths,
        )
        backend = get_backend(args.backend, args.imagemagick_bin)
    except (ConfigError, BackendNotFound) as e:
        print(e, file=sys.stderr)
        return 1

    if not config.asset_root.is_dir():
        print(f"{config.asset_dir}/ not found under root: {root}", file=sys.stderr)
        return 1

    print(f"Variants: {list(config.widths)} px, encodings={', '.join(config.encoding_exts)}")
    print(f"Backend={backend.name}, threads={args.threads}, overwrite={'on' if args.overwrite else 'off'}, dry-run={'on' if args.dry_run else 'off'}")

    manifest = build_manifest(config, backend, threads=args.threads, overwrite=args.overwrite, dry_run=args.dry_run)

    if args.dry_run:
        print(f"Would optimize {len(manifest)} images.")
        return 0
    try:
        save_manifest(config.manifest_path, manifest)
    except OSError as e:
        print(f"Could not write manifest {config.manifest_path}: {e}", file=sys.stderr)
        return 1

    print(f"Optimized {len(manifest)} images.")
    print(f"Manifest: {rel_key(config, config.manifest_path)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
