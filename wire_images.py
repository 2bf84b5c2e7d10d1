#!/usr/bin/env python3
"""
Responsive image wiring: HTML <picture> + CSS image-set() from manifest.json

Reads assets/optimized/manifest.json (written by optimiser.py) and:
- wraps each matching <img> in a <picture> with one <source> per encoding
  (AVIF first, then WebP), each srcset listing every variant width;
- adds width/height from the manifest and a class-based sizes hint to the
  <img> unless the author already set them;
- appends a `background-image: image-set(...)` with 1x/2x AVIF and WebP
  candidates after each matching `background-image: url(...)` in CSS.

Safe to re-run: an <img> already inside <picture> only gets missing
attributes, and a url() already followed by image-set() is left alone.
Files are only written when their content changes.
"""

import argparse
import posixpath
import re
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from image_config import ConfigError, PipelineConfig, load_config
from image_manifest import (
    ImageRecord,
    Manifest,
    ManifestError,
    extract_width,
    is_transient,
    load_manifest,
    read_text,
    write_text_atomic,
)

# Regex to find <img ... src="..."> case-insensitively
IMG_TAG_RE = re.compile(r"<img\b[^>]*(?<![\w-])src\s*=\s*(['\"])(?P<src>[^'\"]+)\1[^>]*>", re.IGNORECASE)
WIDTH_RE = re.compile(r"(?<![\w-])width\s*=", re.IGNORECASE)
HEIGHT_RE = re.compile(r"(?<![\w-])height\s*=", re.IGNORECASE)
SIZES_ATTR_RE = re.compile(r"(?<![\w-])sizes\s*=", re.IGNORECASE)
CLASS_RE = re.compile(r"(?<![\w-])class\s*=\s*(['\"])(?P<cls>[^'\"]*)\1", re.IGNORECASE)
BACKGROUND_RE = re.compile(r"background-image:\s*url\(([^)]+)\);", re.IGNORECASE)

EXTERNAL_PREFIXES = ("http://", "https://", "//", "data:")


# ---------- Paths ----------

def normalize_src(src: str) -> str:
    return re.sub(r"^\.?/", "", src)


def to_document_path(doc_rel: str, target: str) -> str:
    """Path from a document to a root-relative target, always starting with . or .."""
    rel = posixpath.relpath(target, posixpath.dirname(doc_rel) or ".")
    return rel if rel.startswith(".") else f"./{rel}"


def resolve_from(doc_rel: str, ref: str) -> Optional[str]:
    """Root-relative key for a reference made from doc_rel, or None if it leaves the root."""
    joined = posixpath.normpath(posixpath.join(posixpath.dirname(doc_rel), ref))
    if joined == ".." or joined.startswith("../"):
        return None
    return joined


def lookup_img(manifest: Manifest, doc_rel: str, src: str) -> Optional[ImageRecord]:
    if src.lower().startswith(EXTERNAL_PREFIXES):
        return None
    record = manifest.get(normalize_src(src))
    if record is not None:
        return record
    if src.startswith("/"):
        return None
    key = resolve_from(doc_rel, src)
    return manifest.get(key) if key else None


def line_indent(text: str, offset: int) -> str:
    """Whitespace before offset on its line, or "" if the line has other content there."""
    start = text.rfind("\n", 0, offset) + 1
    prefix = text[start:offset]
    return prefix if not prefix.strip() else ""


def line_ending(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


# ---------- HTML ----------

def build_source_set(doc_rel: str, sources: Sequence[str], exts: Sequence[str]) -> str:
    candidates = []
    for src in sources:
        width = extract_width(src, exts)
        if not width:
            continue
        candidates.append(f"{to_document_path(doc_rel, src)} {width}w")
    return ", ".join(candidates)


def get_class_list(tag: str) -> List[str]:
    m = CLASS_RE.search(tag)
    return m.group("cls").split() if m else []


def append_attr(tag: str, attr_text: str) -> str:
    if tag.endswith("/>"):
        return tag[:-2].rstrip() + f" {attr_text} />"
    return tag[:-1].rstrip() + f" {attr_text}>"


def add_attributes(tag: str, record: ImageRecord, config: PipelineConfig) -> str:
    """Add width/height and sizes when missing. Never overrides author values."""
    if not WIDTH_RE.search(tag) and not HEIGHT_RE.search(tag):
        tag = append_attr(tag, f'width="{record.width}" height="{record.height}"')
    if not SIZES_ATTR_RE.search(tag):
        sizes = config.sizes_for_classes(get_class_list(tag))
        if sizes:
            tag = append_attr(tag, f'sizes="{sizes}"')
    return tag


def inside_picture(lower_text: str, offset: int) -> bool:
    last_open = lower_text.rfind("<picture", 0, offset)
    last_close = lower_text.rfind("</picture>", 0, offset)
    return last_open > last_close


def wire_markup(text: str, doc_rel: str, manifest: Manifest, config: PipelineConfig) -> Tuple[str, int]:
    """Returns (new_text, number of <img> tags changed)."""
    lower_text = text.lower()
    newline = line_ending(text)
    exts = config.encoding_exts
    edits = 0

    def repl(m: re.Match) -> str:
        nonlocal edits
        tag = m.group(0)
        record = lookup_img(manifest, doc_rel, m.group("src").strip())
        if record is None or not record.has_encodings(exts):
            return tag

        source_sets = []
        for enc in config.encodings:
            srcset = build_source_set(doc_rel, record.sources[enc.ext], exts)
            if not srcset:
                return tag
            source_sets.append((enc.mime_type, srcset))

        img = add_attributes(tag, record, config)
        if inside_picture(lower_text, m.start()):
            out = img
        else:
            lines = ["<picture>"]
            lines += [f'  <source type="{mime}" srcset="{srcset}" />' for mime, srcset in source_sets]
            lines += [f"  {img}", "</picture>"]
            out = (newline + line_indent(text, m.start())).join(lines)
        if out != tag:
            edits += 1
        return out

    return IMG_TAG_RE.sub(repl, text), edits


# ---------- CSS ----------

def pick_density_pair(sources: Sequence[str], exts: Sequence[str]) -> Optional[Tuple[str, str]]:
    """
    (1x, 2x) variant paths: 2x is the widest variant, 1x the one closest to
    half its width (first wins on ties). None when no width can be read.
    """
    sized = [(extract_width(src, exts), src) for src in sources]
    sized = sorted([item for item in sized if item[0]], key=lambda item: item[0])
    if not sized:
        return None
    max_width, two_x = sized[-1]
    target = (max_width + 1) // 2
    best_width, one_x = sized[0]
    for width, src in sized[1:]:
        if abs(width - target) < abs(best_width - target):
            best_width, one_x = width, src
    return one_x, two_x


def build_image_set(css_rel: str, record: ImageRecord, config: PipelineConfig) -> Optional[str]:
    css_dir = posixpath.dirname(css_rel) or "."
    exts = config.encoding_exts
    candidates = []
    for enc in config.encodings:
        pair = pick_density_pair(record.sources[enc.ext], exts)
        if pair is None:
            return None
        for density, path in zip(("1x", "2x"), pair):
            candidates.append(f'url({posixpath.relpath(path, css_dir)}) type("{enc.mime_type}") {density}')
    return "image-set(" + ", ".join(candidates) + ")"


def lookup_css_url(manifest: Manifest, css_rel: str, url: str) -> Optional[ImageRecord]:
    cleaned = url.replace('"', "").replace("'", "").strip()
    if not cleaned or cleaned.lower().startswith(EXTERNAL_PREFIXES):
        return None
    if cleaned.startswith("/"):
        key = posixpath.normpath(cleaned.lstrip("/"))
    else:
        key = resolve_from(css_rel, cleaned)
    return manifest.get(key) if key else None


def wire_stylesheet(text: str, css_rel: str, manifest: Manifest, config: PipelineConfig) -> Tuple[str, int]:
    """Returns (new_text, number of image-set() declarations appended)."""
    newline = line_ending(text)
    exts = config.encoding_exts
    edits = 0

    def repl(m: re.Match) -> str:
        nonlocal edits
        decl = m.group(0)
        if "image-set(" in text[m.start():m.start() + config.css_lookahead]:
            return decl
        record = lookup_css_url(manifest, css_rel, m.group(1))
        if record is None or not record.has_encodings(exts):
            return decl
        image_set = build_image_set(css_rel, record, config)
        if image_set is None:
            return decl
        edits += 1
        indent = line_indent(text, m.start()) or "  "
        return f"{decl}{newline}{indent}background-image: {image_set};"

    return BACKGROUND_RE.sub(repl, text), edits


# ---------- Driver ----------

WireFn = Callable[[str, str, Manifest, PipelineConfig], Tuple[str, int]]


def update_files(
    config: PipelineConfig,
    manifest: Manifest,
    files: Sequence[str],
    wire: WireFn,
    dry_run: bool = False,
) -> int:
    """Runs wire over each file; returns how many files changed."""
    changed = 0
    for rel in files:
        rel = rel.replace("\\", "/").lstrip("/")
        file_path = config.root / rel
        if is_transient(file_path):
            continue
        try:
            text, encoding = read_text(file_path)
        except OSError as e:
            print(f"SKIP  {rel}  read error: {e}", file=sys.stderr)
            continue

        updated, edits = wire(text, rel, manifest, config)
        if updated == text:
            print(f"SKIP  {rel}  no responsive changes")
            continue
        if not dry_run:
            try:
                write_text_atomic(file_path, updated, encoding)
            except OSError as e:
                print(f"ERR   {rel}  write error: {e}", file=sys.stderr)
                continue
        changed += 1
        print(f"{'DRY  ' if dry_run else 'EDIT '} {rel}  wired: {edits}")
    return changed


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Wire optimised image variants into HTML and CSS.")
    parser.add_argument("--root", default=".", help="Project root containing the documents and assets/")
    parser.add_argument("--config", default=None, help="JSON config (default: image-pipeline.json in root, if present)")
    parser.add_argument("--documents", nargs="+", default=None, help="HTML documents to rewrite (relative to root)")
    parser.add_argument("--stylesheets", nargs="+", default=None, help="Stylesheets to rewrite (relative to root)")
    parser.add_argument("--no-html", action="store_true", help="Skip HTML documents")
    parser.add_argument("--no-css", action="store_true", help="Skip stylesheets")
    parser.add_argument("--dry-run", action="store_true", help="Show planned changes only")
    args = parser.parse_args(argv)

    root = Path(args.root).resolve()
    try:
        config = load_config(
            root,
            Path(args.config) if args.config else None,
            documents=tuple(args.documents) if args.documents else None,
            stylesheets=tuple(args.stylesheets) if args.stylesheets else None,
        )
        manifest = load_manifest(config.manifest_path)
    except (ConfigError, ManifestError) as e:
        print(e, file=sys.stderr)
        return 1

    total = 0
    changed = 0
    if not args.no_html:
        total += len(config.documents)
        changed += update_files(config, manifest, config.documents, wire_markup, dry_run=args.dry_run)
    if not args.no_css:
        total += len(config.stylesheets)
        changed += update_files(config, manifest, config.stylesheets, wire_stylesheet, dry_run=args.dry_run)

    print(f"Wired responsive image sources into {changed} of {total} documents.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
