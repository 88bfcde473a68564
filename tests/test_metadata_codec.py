from __future__ import annotations

import io
import struct
import zlib

import pytest
from PIL import Image

from bulk_resizer.image_encode_pipeline import ContainerFormat
from bulk_resizer.metadata_codec import (
    PHYS_CHUNK_SIZE,
    PNG_SIGNATURE,
    MalformedContainer,
    TagOutcome,
    build_phys_chunk,
    dpi_to_ppm,
    png_crc32,
    read_jfif_density,
    read_png_chunks,
    read_png_phys,
    tag_resolution,
    tag_resolution_with_outcome,
)
from conftest import encode


def _png(size=(100, 100), **kwargs) -> bytes:
    return encode(Image.new("RGB", size, (10, 20, 30)), "PNG", **kwargs)


def _strip_app0(data: bytes) -> bytes:
    """JPEG から JFIF APP0 セグメントを取り除く"""
    assert data[2:4] == b"\xff\xe0"
    (length,) = struct.unpack(">H", data[4:6])
    return data[:2] + data[4 + length :]


def test_png_crc32_known_value() -> None:
    assert png_crc32(b"IEND") == 0xAE426082


def test_dpi_to_ppm_rounds_half_up() -> None:
    assert dpi_to_ppm(300) == 11811
    assert dpi_to_ppm(72) == 2835
    assert dpi_to_ppm(0) == 0
    with pytest.raises(ValueError):
        dpi_to_ppm(-1)


def test_insert_phys_after_ihdr_for_300_dpi() -> None:
    original = _png()
    assert read_png_phys(original) is None

    tagged, outcome = tag_resolution_with_outcome(original, ContainerFormat.PNG, 300)

    assert outcome is TagOutcome.INSERTED
    assert len(tagged) == len(original) + PHYS_CHUNK_SIZE
    chunks = read_png_chunks(tagged)
    assert [c.type for c in chunks[:2]] == [b"IHDR", b"pHYs"]

    phys = chunks[1]
    payload = tagged[phys.data_offset : phys.data_offset + 9]
    assert payload == struct.pack(">IIB", 11811, 11811, 1)
    assert phys.crc == zlib.crc32(b"pHYs" + payload)

    # 挿入箇所以外のバイト列は変わらない
    assert tagged[: phys.offset] == original[: phys.offset]
    assert tagged[phys.end :] == original[phys.offset :]


def test_existing_phys_is_updated_in_place() -> None:
    original = _png(dpi=(72, 72))
    before = read_png_chunks(original)
    assert read_png_phys(original) == (2835, 2835, 1)

    tagged, outcome = tag_resolution_with_outcome(original, "png", 300)

    assert outcome is TagOutcome.UPDATED
    assert len(tagged) == len(original)
    after = read_png_chunks(tagged)
    assert [c.type for c in after] == [c.type for c in before]
    assert read_png_phys(tagged) == (11811, 11811, 1)

    phys = next(c for c in after if c.type == b"pHYs")
    assert phys.crc == png_crc32(tagged[phys.offset + 4 : phys.data_offset + 9])
    assert tagged[: phys.data_offset] == original[: phys.data_offset]
    assert tagged[phys.end :] == original[phys.end :]


def test_tagged_png_still_decodes_with_dpi() -> None:
    tagged = tag_resolution(_png(), ContainerFormat.PNG, 300)
    with Image.open(io.BytesIO(tagged)) as img:
        img.load()
        assert img.size == (100, 100)
        assert round(img.info["dpi"][0]) == 300


def test_tagging_is_deterministic_and_idempotent() -> None:
    original = _png()
    once = tag_resolution(original, "png", 300)
    assert tag_resolution(original, "png", 300) == once
    assert tag_resolution(once, "png", 300) == once


def test_png_without_signature_is_unchanged() -> None:
    data = b"not a png at all"
    tagged, outcome = tag_resolution_with_outcome(data, "png", 300)
    assert tagged == data
    assert outcome is TagOutcome.NO_SIGNATURE


def test_truncated_png_is_unchanged() -> None:
    data = _png()[:20]
    tagged, outcome = tag_resolution_with_outcome(data, "png", 300)
    assert tagged == data
    assert outcome is TagOutcome.MALFORMED
    with pytest.raises(MalformedContainer):
        read_png_chunks(data)


def test_build_phys_chunk_layout() -> None:
    chunk = build_phys_chunk(11811)
    assert len(chunk) == PHYS_CHUNK_SIZE
    assert chunk[:8] == b"\x00\x00\x00\x09pHYs"


def test_jpeg_jfif_density_is_rewritten() -> None:
    original = encode(Image.new("RGB", (32, 32), (50, 60, 70)), "JPEG", quality=90)
    assert read_jfif_density(original) is not None

    tagged, outcome = tag_resolution_with_outcome(original, ContainerFormat.JPEG, 300)

    assert outcome is TagOutcome.UPDATED
    assert len(tagged) == len(original)
    assert read_jfif_density(tagged) == (1, 300, 300)
    with Image.open(io.BytesIO(tagged)) as img:
        assert img.info["dpi"] == (300, 300)


def test_jpeg_density_is_clamped() -> None:
    original = encode(Image.new("RGB", (8, 8)), "JPEG")
    tagged = tag_resolution(original, "jpeg", 100000)
    assert read_jfif_density(tagged) == (1, 65535, 65535)


def test_jpeg_without_jfif_is_unchanged() -> None:
    original = _strip_app0(encode(Image.new("RGB", (8, 8)), "JPEG"))
    assert read_jfif_density(original) is None

    tagged, outcome = tag_resolution_with_outcome(original, "jpeg", 300)

    assert tagged == original
    assert outcome is TagOutcome.NO_JFIF
    assert outcome.tagged is False


def test_jpeg_without_soi_is_unchanged() -> None:
    tagged, outcome = tag_resolution_with_outcome(PNG_SIGNATURE, "jpeg", 300)
    assert tagged == PNG_SIGNATURE
    assert outcome is TagOutcome.NO_SIGNATURE
