from __future__ import annotations

import io

import pytest
from PIL import Image

from bulk_resizer.errors import EncodeFailure
from bulk_resizer.image_encode_pipeline import (
    ContainerFormat,
    build_encoder_save_kwargs,
    encode_image,
    normalize_quality,
    resolve_output_format,
)


@pytest.mark.parametrize(
    "source_format,convert,expected",
    [
        ("JPEG", False, ContainerFormat.JPEG),
        ("jpeg", False, ContainerFormat.JPEG),
        ("JPEG", True, ContainerFormat.PNG),
        ("PNG", False, ContainerFormat.PNG),
        ("WEBP", False, ContainerFormat.PNG),
        ("", False, ContainerFormat.PNG),
    ],
)
def test_resolve_output_format(source_format: str, convert: bool, expected: ContainerFormat) -> None:
    assert resolve_output_format(source_format, convert) is expected


def test_container_format_extension_and_coerce() -> None:
    assert ContainerFormat.coerce("jpg") is ContainerFormat.JPEG
    assert ContainerFormat.JPEG.extension == "jpg"
    assert ContainerFormat.PNG.extension == "png"
    with pytest.raises(ValueError):
        ContainerFormat.coerce("webp")


def test_normalize_quality_clamps() -> None:
    assert normalize_quality(0) == 1
    assert normalize_quality(150) == 100
    assert normalize_quality(80) == 80


def test_build_encoder_save_kwargs() -> None:
    jpeg = build_encoder_save_kwargs(ContainerFormat.JPEG, 100)
    png = build_encoder_save_kwargs(ContainerFormat.PNG)
    assert jpeg["format"] == "JPEG"
    assert jpeg["quality"] == 95
    assert png == {"format": "PNG", "optimize": False, "compress_level": 6}
    assert "dpi" not in jpeg and "dpi" not in png


def test_encode_png_keeps_alpha() -> None:
    img = Image.new("RGBA", (10, 10), (0, 0, 0, 0))
    data = encode_image(img, ContainerFormat.PNG)
    assert data.startswith(b"\x89PNG\r\n\x1a\n")
    with Image.open(io.BytesIO(data)) as decoded:
        assert decoded.mode == "RGBA"
        assert decoded.getpixel((0, 0))[3] == 0


def test_encode_jpeg_flattens_onto_background() -> None:
    img = Image.new("RGBA", (16, 16), (0, 0, 0, 0))
    data = encode_image(img, "jpeg", quality=95, background="#ffffff")
    assert data.startswith(b"\xff\xd8")
    with Image.open(io.BytesIO(data)) as decoded:
        assert decoded.mode == "RGB"
        r, g, b = decoded.getpixel((8, 8))
        assert min(r, g, b) > 240


def test_encode_failure_is_wrapped(monkeypatch) -> None:
    img = Image.new("RGB", (4, 4))

    def _broken_save(*args, **kwargs):
        raise OSError("disk gone")

    monkeypatch.setattr(img, "save", _broken_save)
    with pytest.raises(EncodeFailure):
        encode_image(img, ContainerFormat.PNG)
