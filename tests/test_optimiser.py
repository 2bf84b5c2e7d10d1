from __future__ import annotations

import json
from pathlib import Path

import optimiser
from conftest import FakeBackend, touch
from image_config import DEFAULT_WIDTHS, PipelineConfig
from image_manifest import extract_width, load_manifest
from optimiser import build_manifest, claim_outputs, collect_images, pick_widths, transcode_image


def _quiet(line: str) -> None:
    pass


def test_pick_widths_never_upscales_and_includes_original() -> None:
    assert pick_widths(1600, DEFAULT_WIDTHS) == [320, 480, 640, 960, 1280, 1600]
    assert pick_widths(1000, DEFAULT_WIDTHS) == [320, 480, 640, 960, 1000]
    assert pick_widths(200, DEFAULT_WIDTHS) == [200]
    assert pick_widths(2400, DEFAULT_WIDTHS) == [320, 480, 640, 960, 1280, 1600, 1920, 2400]


def test_collect_images_skips_output_tree_and_other_files(config: PipelineConfig) -> None:
    root = config.root
    touch(root / "assets" / "team" / "alex.jpg")
    touch(root / "assets" / "bg.PNG")
    touch(root / "assets" / "logo.jpeg")
    touch(root / "assets" / "optimized" / "old-320.png")
    touch(root / "assets" / "notes.txt")
    touch(root / "assets" / "icon.svg")
    touch(root / "assets" / "draft.jpg~")
    touch(root / "elsewhere.jpg")

    found = [p.relative_to(root).as_posix() for p in collect_images(config)]
    assert found == ["assets/bg.PNG", "assets/logo.jpeg", "assets/team/alex.jpg"]


def test_transcode_writes_ladder_in_mirrored_tree(config: PipelineConfig) -> None:
    src = touch(config.root / "assets" / "team" / "alex.jpg")
    backend = FakeBackend(dims={"alex.jpg": (1600, 900)})

    result, failures = transcode_image(src, config, backend)

    assert failures == []
    width, height, sources = result
    assert (width, height) == (1600, 900)
    assert list(sources) == ["avif", "webp"]
    assert sources["avif"][0] == "assets/optimized/team/alex-320.avif"
    assert sources["webp"][-1] == "assets/optimized/team/alex-1600.webp"
    for ext, paths in sources.items():
        assert len(paths) == 6
        for path in paths:
            assert (config.root / path).is_file()
            assert path.endswith(f".{ext}")
    # one resize per width, both encodings from it
    assert [w for _, w in backend.resized] == [320, 480, 640, 960, 1280, 1600]
    assert len(backend.released) == 6


def test_transcode_uses_configured_quality(config: PipelineConfig) -> None:
    src = touch(config.root / "assets" / "a.jpg")
    backend = FakeBackend(dims={"a.jpg": (300, 200)})

    transcode_image(src, config, backend)

    assert backend.encoded == [("a-300.avif", 55), ("a-300.webp", 75)]


def test_transcode_intermediates_do_not_leak(config: PipelineConfig) -> None:
    src = touch(config.root / "assets" / "a.jpg")
    backend = FakeBackend(dims={"a.jpg": (700, 400)})

    transcode_image(src, config, backend)

    for workdir in backend.workdirs:
        assert not workdir.exists()
    names = sorted(p.name for p in config.output_root.rglob("*"))
    assert names == sorted(
        f"a-{w}.{ext}" for w in (320, 480, 640, 700) for ext in ("avif", "webp")
    )


def test_transcode_skips_image_without_dimensions(config: PipelineConfig) -> None:
    src = touch(config.root / "assets" / "broken.jpg")
    backend = FakeBackend()

    assert transcode_image(src, config, backend) == (None, [])
    assert backend.resized == []


def test_encode_failure_only_drops_that_variant(config: PipelineConfig) -> None:
    src = touch(config.root / "assets" / "a.jpg")
    backend = FakeBackend(dims={"a.jpg": (1000, 500)}, fail_encode=[(640, "avif")])

    result, failures = transcode_image(src, config, backend)

    _, _, sources = result
    assert [extract_width(p) for p in sources["avif"]] == [320, 480, 960, 1000]
    assert [extract_width(p) for p in sources["webp"]] == [320, 480, 640, 960, 1000]
    assert len(failures) == 1
    assert "640 avif" in failures[0]


def test_resize_failure_drops_width_for_every_encoding(config: PipelineConfig) -> None:
    src = touch(config.root / "assets" / "a.jpg")
    backend = FakeBackend(dims={"a.jpg": (500, 500)}, fail_resize=[320])

    result, failures = transcode_image(src, config, backend)

    _, _, sources = result
    assert [extract_width(p) for p in sources["avif"]] == [480, 500]
    assert [extract_width(p) for p in sources["webp"]] == [480, 500]
    assert failures and "320 resize" in failures[0]


def test_encoding_with_no_variants_is_omitted(config: PipelineConfig) -> None:
    src = touch(config.root / "assets" / "a.jpg")
    backend = FakeBackend(dims={"a.jpg": (400, 300)}, fail_encode=[(320, "avif"), (400, "avif")])

    result, _ = transcode_image(src, config, backend)

    assert list(result[2]) == ["webp"]


def test_build_manifest_isolates_failures(config: PipelineConfig) -> None:
    root = config.root
    touch(root / "assets" / "team" / "alex.jpg")
    touch(root / "assets" / "broken.jpg")
    touch(root / "assets" / "dead.png")
    touch(root / "assets" / "bg.png")
    backend = FakeBackend(
        dims={"alex.jpg": (1600, 900), "bg.png": (2400, 1200), "dead.png": (100, 100)},
        fail_encode=[(100, "avif"), (100, "webp")],
    )
    lines: list = []

    manifest = build_manifest(config, backend, threads=4, emit=lines.append)

    assert list(manifest) == ["assets/bg.png", "assets/team/alex.jpg"]
    assert (manifest["assets/team/alex.jpg"].width, manifest["assets/team/alex.jpg"].height) == (1600, 900)
    assert any(line.startswith("SKIP  assets/broken.jpg") for line in lines)
    assert any(line.startswith("ERR   assets/dead.png") for line in lines)


def test_same_stem_sources_do_not_share_variants(config: PipelineConfig) -> None:
    root = config.root
    touch(root / "assets" / "logo.png")
    touch(root / "assets" / "logo.jpg")
    backend = FakeBackend(dims={"logo.png": (400, 400), "logo.jpg": (400, 100)})
    lines: list = []

    manifest = build_manifest(config, backend, threads=2, emit=lines.append)

    assert list(manifest) == ["assets/logo.jpg"]
    assert (manifest["assets/logo.jpg"].width, manifest["assets/logo.jpg"].height) == (400, 100)
    assert {name for name, _ in backend.resized} == {"logo.jpg"}
    errors = [line for line in lines if line.startswith("ERR   assets/logo.png")]
    assert len(errors) == 1
    assert "assets/logo.jpg" in errors[0]


def test_claim_outputs_ignores_case_and_keeps_directories_apart(config: PipelineConfig) -> None:
    assets = config.root / "assets"
    first = touch(assets / "Logo.PNG")
    second = touch(assets / "logo.jpg")
    nested = touch(assets / "brand" / "logo.jpg")

    unique, clashes = claim_outputs(config, [first, second, nested])

    assert unique == [first, nested]
    assert clashes == [(second, first)]


def test_manifest_widths_strictly_ascending_and_bounded(config: PipelineConfig) -> None:
    for name in ("a.jpg", "b.jpg", "c.png"):
        touch(config.root / "assets" / name)
    backend = FakeBackend(dims={"a.jpg": (1920, 1080), "b.jpg": (333, 100), "c.png": (5000, 10)})

    manifest = build_manifest(config, backend, threads=3, emit=_quiet)

    for record in manifest.values():
        for paths in record.sources.values():
            widths = [extract_width(p) for p in paths]
            assert widths == sorted(set(widths))
            assert max(widths) == record.width
            assert all(w <= record.width for w in widths)


def test_up_to_date_variants_are_reused(config: PipelineConfig) -> None:
    touch(config.root / "assets" / "a.jpg")
    first = FakeBackend(dims={"a.jpg": (640, 480)})
    build_manifest(config, first, emit=_quiet)

    second = FakeBackend(dims={"a.jpg": (640, 480)})
    manifest = build_manifest(config, second, emit=_quiet)

    assert second.resized == []
    assert len(manifest["assets/a.jpg"].sources["avif"]) == 3

    third = FakeBackend(dims={"a.jpg": (640, 480)})
    build_manifest(config, third, overwrite=True, emit=_quiet)
    assert len(third.resized) == 3


def test_dry_run_writes_nothing(config: PipelineConfig) -> None:
    touch(config.root / "assets" / "a.jpg")
    backend = FakeBackend(dims={"a.jpg": (640, 480)})

    manifest = build_manifest(config, backend, dry_run=True, emit=_quiet)

    assert "assets/a.jpg" in manifest
    assert backend.resized == []
    assert not config.output_root.exists()


def test_main_writes_manifest(tmp_path: Path, monkeypatch) -> None:
    touch(tmp_path / "assets" / "team" / "alex.jpg")
    touch(tmp_path / "assets" / "broken.jpg")
    backend = FakeBackend(dims={"alex.jpg": (1600, 900)})
    monkeypatch.setattr(optimiser, "get_backend", lambda name, im_bin=None: backend)

    assert optimiser.main(["--root", str(tmp_path), "--threads", "2"]) == 0

    manifest_path = tmp_path / "assets" / "optimized" / "manifest.json"
    raw = json.loads(manifest_path.read_text(encoding="utf-8"))
    assert list(raw) == ["assets/team/alex.jpg"]
    assert raw["assets/team/alex.jpg"]["width"] == 1600
    loaded = load_manifest(manifest_path)
    assert loaded["assets/team/alex.jpg"].height == 900


def test_main_regenerates_manifest_wholesale(tmp_path: Path, monkeypatch) -> None:
    manifest_path = tmp_path / "assets" / "optimized" / "manifest.json"
    manifest_path.parent.mkdir(parents=True)
    manifest_path.write_text(json.dumps({"assets/gone.jpg": {"width": 1, "height": 1, "sources": {}}}))
    touch(tmp_path / "assets" / "a.jpg")
    backend = FakeBackend(dims={"a.jpg": (320, 320)})
    monkeypatch.setattr(optimiser, "get_backend", lambda name, im_bin=None: backend)

    assert optimiser.main(["--root", str(tmp_path)]) == 0

    assert list(json.loads(manifest_path.read_text())) == ["assets/a.jpg"]


def test_main_variant_widths_flag(tmp_path: Path, monkeypatch) -> None:
    touch(tmp_path / "assets" / "a.jpg")
    backend = FakeBackend(dims={"a.jpg": (1000, 500)})
    monkeypatch.setattr(optimiser, "get_backend", lambda name, im_bin=None: backend)

    assert optimiser.main(["--root", str(tmp_path), "--variant-widths", "500,250"]) == 0

    manifest = load_manifest(tmp_path / "assets" / "optimized" / "manifest.json")
    assert [extract_width(p) for p in manifest["assets/a.jpg"].sources["webp"]] == [250, 500, 1000]


def test_main_fails_without_asset_root(tmp_path: Path, capsys) -> None:
    assert optimiser.main(["--root", str(tmp_path)]) == 1
    assert "assets/ not found" in capsys.readouterr().err
