from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from PIL import Image

from bulk_resizer.errors import DecodeFailure
from bulk_resizer.source_registry import (
    SourceRegistry,
    decode_source,
    decode_source_async,
    discover_image_paths,
)
from conftest import encode


def test_decode_source_reads_size_and_format() -> None:
    data = encode(Image.new("RGB", (64, 32), (1, 2, 3)), "JPEG")
    source = decode_source(data, "photo.jpg", "src-0001")

    assert (source.width, source.height) == (64, 32)
    assert source.source_format == "JPEG"
    assert source.is_jpeg is True
    assert source.basename == "photo"


def test_decode_source_applies_exif_orientation() -> None:
    img = Image.new("RGB", (40, 20), (10, 20, 30))
    exif = Image.Exif()
    exif[0x0112] = 6  # 90度回転
    data = encode(img, "JPEG", exif=exif.tobytes())

    source = decode_source(data, "rotated.jpg", "src-0001")
    assert (source.width, source.height) == (20, 40)


@pytest.mark.parametrize("data", [b"", b"not an image", b"\x89PNG\r\n\x1a\n\x00\x00"])
def test_decode_source_failure_is_decode_failure(data: bytes) -> None:
    with pytest.raises(DecodeFailure):
        decode_source(data, "bad.png", "src-0001")


def test_decode_source_async_reports_failure_on_future() -> None:
    with ThreadPoolExecutor(max_workers=1) as pool:
        ok = decode_source_async(pool, encode(Image.new("RGB", (8, 8))), "ok.png", "src-0001")
        bad = decode_source_async(pool, b"garbage", "bad.png", "src-0002")
        assert ok.result().width == 8
        with pytest.raises(DecodeFailure):
            bad.result()


def test_registry_assigns_sequential_ids() -> None:
    registry = SourceRegistry()
    first = registry.add_bytes(encode(Image.new("RGB", (4, 4))), "a.png")
    second = registry.add_image(Image.new("RGBA", (5, 5)), "b.png")

    assert first.id == "src-0001"
    assert second.id == "src-0002"
    assert [s.id for s in registry] == ["src-0001", "src-0002"]
    assert registry.get("src-0002").width == 5


def test_registry_remove_and_clear() -> None:
    registry = SourceRegistry()
    source = registry.add_image(Image.new("RGB", (4, 4)), "a.png")
    registry.add_image(Image.new("RGB", (4, 4)), "b.png")

    assert registry.remove(source.id) is True
    assert registry.remove(source.id) is False
    with pytest.raises(KeyError):
        registry.get(source.id)

    registry.clear()
    assert len(registry) == 0


def test_add_files_keeps_input_order_and_collects_failures(sample_images, broken_image: Path) -> None:
    registry = SourceRegistry()
    paths = [sample_images["wide"], broken_image, sample_images["png"]]

    added, failures = registry.add_files(paths, max_workers=3)

    assert [s.name for s in added] == ["B.png", "A.png"]
    assert [path for path, _ in failures] == [broken_image]
    assert isinstance(failures[0][1], DecodeFailure)
    assert len(registry) == 2


def test_discover_image_paths_sorted_and_recursive(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    for name in ["b.PNG", "a.jpg", "notes.txt", "sub/c.webp"]:
        (tmp_path / name).write_bytes(b"x")

    recursive = discover_image_paths([tmp_path])
    flat = discover_image_paths([tmp_path], recursive=False)

    assert [p.name for p in recursive] == ["a.jpg", "b.PNG", "c.webp"]
    assert [p.name for p in flat] == ["a.jpg", "b.PNG"]


def test_discover_image_paths_deduplicates_explicit_files(tmp_path: Path) -> None:
    target = tmp_path / "a.png"
    target.write_bytes(b"x")
    found = discover_image_paths([target, tmp_path, tmp_path / "missing.png"])
    assert found == [target]
