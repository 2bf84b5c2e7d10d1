"""
Image backends: read dimensions, resize and encode behind one small interface.

PillowBackend does everything in-process. ImageMagickBackend shells out to
`convert`/`magick` and keeps its intermediate resize on disk inside the
work directory handed to resize_to (the caller owns and removes it).
"""

import os
import subprocess
from pathlib import Path
from typing import Any, Optional, Protocol, Tuple

from PIL import Image

from image_config import EncodingSpec

PILLOW_FORMATS = {"avif": "AVIF", "webp": "WEBP", "jpg": "JPEG", "jpeg": "JPEG", "png": "PNG"}


class EncodeError(RuntimeError):
    pass


class BackendNotFound(RuntimeError):
    pass


class ImageBackend(Protocol):
    name: str

    def probe_dimensions(self, path: Path) -> Optional[Tuple[int, int]]:
        ...

    def resize_to(self, path: Path, width: int, workdir: Path) -> Any:
        ...

    def encode(self, resized: Any, dst: Path, encoding: EncodingSpec) -> None:
        ...

    def release(self, resized: Any) -> None:
        ...


def ensure_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def partial_path(dst: Path) -> Path:
    return dst.with_name(dst.name + ".part")


def has_alpha(im: Image.Image) -> bool:
    return ("A" in im.mode) or (im.info.get("transparency") is not None)


# ---------- Pillow ----------

class PillowBackend:
    name = "pillow"

    def probe_dimensions(self, path: Path) -> Optional[Tuple[int, int]]:
        try:
            with Image.open(path) as im:
                w, h = im.size
        except (OSError, ValueError):
            return None
        if not w or not h:
            return None
        return w, h

    def resize_to(self, path: Path, width: int, workdir: Path) -> Image.Image:
        with Image.open(path) as im:
            im.load()
            if im.mode not in ("RGB", "RGBA"):
                im = im.convert("RGBA" if has_alpha(im) else "RGB")
            if im.width <= width:
                return im.copy()
            height = max(1, round(im.height * width / im.width))
            return im.resize((width, height), Image.LANCZOS)

    def encode(self, resized: Image.Image, dst: Path, encoding: EncodingSpec) -> None:
        fmt = PILLOW_FORMATS.get(encoding.ext, encoding.ext.upper())
        params = {"quality": encoding.quality}
        if encoding.effort is not None:
            if fmt == "WEBP":
                params["method"] = min(max(encoding.effort, 0), 6)
            elif fmt == "AVIF":
                # effort runs 0 (fast) to 9 (slow); libavif speed runs the other way
                params["speed"] = min(max(9 - encoding.effort, 0), 10)
        ensure_dir(dst)
        tmp = partial_path(dst)
        try:
            resized.save(tmp, format=fmt, **params)
            os.replace(tmp, dst)
        except (OSError, ValueError, KeyError) as e:
            raise EncodeError(f"{fmt} encode failed: {e}") from e
        finally:
            if tmp.exists():
                tmp.unlink()

    def release(self, resized: Image.Image) -> None:
        resized.close()


# ---------- ImageMagick ----------

def find_imagemagick_bin(explicit: Optional[str] = None) -> Tuple[str, bool]:
    candidates = []
    if explicit:
        candidates.append(explicit)
    candidates += ["convert", "magick"]
    for exe in candidates:
        try:
            out = subprocess.run([exe, "-version"], capture_output=True, text=True)
            if out.returncode == 0 and ("ImageMagick" in out.stdout or "ImageMagick" in out.stderr):
                requires_wrapper = (Path(exe).stem.lower() == "magick")
                return exe, requires_wrapper
        except FileNotFoundError:
            continue
    raise BackendNotFound("Could not find ImageMagick. Install it or pass --imagemagick-bin")


class ImageMagickBackend:
    name = "imagemagick"

    def __init__(self, im_bin: str, requires_wrapper: bool) -> None:
        self.im_bin = im_bin
        self.requires_wrapper = requires_wrapper

    def _tool(self, tool: str) -> list:
        if self.requires_wrapper:
            return [self.im_bin, tool]
        if tool == "identify":
            # `convert` cannot print dimensions; use the identify next to it
            bin_path = Path(self.im_bin)
            return [str(bin_path.with_name("identify" + bin_path.suffix))]
        return [self.im_bin]

    def _run(self, cmd: list, what: str) -> None:
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise EncodeError(f"{what}: {e}") from e
        if proc.returncode != 0:
            raise EncodeError(f"{what}: {proc.stderr.strip() or proc.stdout.strip()}")

    def probe_dimensions(self, path: Path) -> Optional[Tuple[int, int]]:
        cmd = self._tool("identify") + ["-format", "%w %h", f"{path}[0]"]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError:
            return None
        if proc.returncode != 0:
            return None
        parts = proc.stdout.strip().split()
        if len(parts) == 2 and parts[0].isdigit() and parts[1].isdigit():
            w, h = int(parts[0]), int(parts[1])
            if w and h:
                return w, h
        return None

    def resize_to(self, path: Path, width: int, workdir: Path) -> Path:
        out = workdir / f"{path.stem}-{width}.png"
        # ">" shrinks only
        cmd = self._tool("convert") + [str(path), "-resize", f"{width}x>", "-strip", str(out)]
        self._run(cmd, f"resize to {width}")
        return out

    def encode(self, resized: Path, dst: Path, encoding: EncodingSpec) -> None:
        cmd = self._tool("convert") + [str(resized), "-quality", str(encoding.quality)]
        if encoding.effort is not None:
            if encoding.ext == "webp":
                cmd += ["-define", f"webp:method={min(max(encoding.effort, 0), 6)}"]
            elif encoding.ext == "avif":
                cmd += ["-define", f"heic:speed={min(max(9 - encoding.effort, 0), 9)}"]
        ensure_dir(dst)
        tmp = partial_path(dst)
        cmd += [f"{encoding.ext.upper()}:{tmp}"]
        try:
            self._run(cmd, f"{encoding.ext} encode")
            os.replace(tmp, dst)
        finally:
            if tmp.exists():
                tmp.unlink()

    def release(self, resized: Path) -> None:
        if resized.exists():
            resized.unlink()


def get_backend(name: str, imagemagick_bin: Optional[str] = None) -> ImageBackend:
    if name == "pillow":
        return PillowBackend()
    if name == "imagemagick":
        im_bin, requires_wrapper = find_imagemagick_bin(imagemagick_bin)
        return ImageMagickBackend(im_bin, requires_wrapper)
    raise ValueError(f"Unknown backend: {name}")
