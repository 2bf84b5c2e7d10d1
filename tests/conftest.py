from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import pytest

from image_backends import EncodeError
from image_config import EncodingSpec, PipelineConfig
from image_manifest import ImageRecord


class FakeBackend:
    """Records calls and writes placeholder files instead of real images."""

    name = "fake"

    def __init__(
        self,
        dims: Optional[Dict[str, Tuple[int, int]]] = None,
        fail_encode: Iterable[Tuple[int, str]] = (),
        fail_resize: Iterable[int] = (),
    ) -> None:
        self.dims = dims or {}
        self.fail_encode = set(fail_encode)
        self.fail_resize = set(fail_resize)
        self.resized: list = []
        self.encoded: list = []
        self.released: list = []
        self.workdirs: set = set()

    def probe_dimensions(self, path: Path) -> Optional[Tuple[int, int]]:
        return self.dims.get(path.name)

    def resize_to(self, path: Path, width: int, workdir: Path) -> Path:
        if width in self.fail_resize:
            raise EncodeError(f"resize to {width}: boom")
        self.workdirs.add(workdir)
        out = workdir / f"{path.stem}-{width}.png"
        out.write_text(str(width))
        self.resized.append((path.name, width))
        return out

    def encode(self, resized: Path, dst: Path, encoding: EncodingSpec) -> None:
        width = int(resized.read_text())
        if (width, encoding.ext) in self.fail_encode:
            raise EncodeError(f"{encoding.ext} encode failed")
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst.write_text(f"{encoding.ext} {width}")
        self.encoded.append((dst.name, encoding.quality))

    def release(self, resized: Path) -> None:
        self.released.append(resized)
        resized.unlink()


def touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"not really an image")
    return path


def variant_paths(base: str, widths, ext: str) -> list:
    return [f"{base}-{w}.{ext}" for w in widths]


@pytest.fixture
def config(tmp_path: Path) -> PipelineConfig:
    return PipelineConfig(root=tmp_path)


@pytest.fixture
def alex_manifest() -> Dict[str, ImageRecord]:
    widths = (320, 480, 640, 960, 1280, 1600)
    base = "assets/optimized/team/alex"
    return {
        "assets/team/alex.jpg": ImageRecord(
            width=1600,
            height=900,
            sources={
                "avif": variant_paths(base, widths, "avif"),
                "webp": variant_paths(base, widths, "webp"),
            },
        )
    }
