"""PNG / JPEG のバイト列へ印刷解像度(DPI)メタデータを書き込む。

画素データには触れず、コンテナのメタデータだけをバイト単位で書き換える。

PNG:
    ``pHYs`` チャンクがあれば9バイトのデータとCRCだけを上書きし、
    なければ ``IHDR`` の直後に21バイトの ``pHYs`` チャンクを挿入する。
JPEG:
    JFIF APP0 セグメントの密度単位と X/Y 密度を上書きする。
    JFIF セグメントがない場合は何もしない（エラーにはしない）。

ピクセル/メートルへの換算は ``dpi / 0.0254`` の四捨五入（0.5は切り上げ）。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
import struct
import zlib
from typing import Optional, Tuple, Union

from loguru import logger

from .image_encode_pipeline import ContainerFormat

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SOI = b"\xff\xd8"
METERS_PER_INCH = 0.0254

_CHUNK_IHDR = b"IHDR"
_CHUNK_PHYS = b"pHYs"
_CHUNK_IEND = b"IEND"
_PHYS_DATA_LENGTH = 9
_PHYS_UNIT_METER = 1
PHYS_CHUNK_SIZE = 4 + 4 + _PHYS_DATA_LENGTH + 4

_JFIF_IDENTIFIER = b"JFIF\x00"
_JFIF_UNIT_DPI = 1
_JFIF_MIN_SEGMENT_LENGTH = 16
_MAX_U16 = 0xFFFF
_MAX_U32 = 0xFFFFFFFF

_MARKER_APP0 = 0xE0
_MARKER_SOS = 0xDA
_MARKER_EOI = 0xD9
# 長さフィールドを持たないマーカー (TEM, RSTn, SOI)
_STANDALONE_MARKERS = {0x01, 0xD8, *range(0xD0, 0xD8)}


class TagOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    NO_SIGNATURE = "no_signature"
    NO_JFIF = "no_jfif"
    MALFORMED = "malformed"

    @property
    def tagged(self) -> bool:
        return self in (TagOutcome.INSERTED, TagOutcome.UPDATED)


class MalformedContainer(ValueError):
    pass


@dataclass(frozen=True)
class PngChunk:
    type: bytes
    offset: int
    length: int
    crc: int

    @property
    def data_offset(self) -> int:
        return self.offset + 8

    @property
    def end(self) -> int:
        return self.offset + 12 + self.length


def png_crc32(data: bytes) -> int:
    """PNG仕様のCRC-32（多項式0xEDB88320、初期値・最終XORとも全ビット1）。"""
    return zlib.crc32(data) & _MAX_U32


def dpi_to_ppm(dpi: Union[int, float]) -> int:
    """DPIをピクセル/メートルに換算する（0.5は切り上げ）。300 -> 11811。"""
    if dpi < 0:
        raise ValueError(f"DPIは0以上で指定してください: {dpi}")
    return min(_MAX_U32, int(math.floor(dpi / METERS_PER_INCH + 0.5)))


def build_phys_payload(ppm_x: int, ppm_y: int, unit: int = _PHYS_UNIT_METER) -> bytes:
    return struct.pack(">IIB", ppm_x, ppm_y, unit)


def build_phys_chunk(ppm_x: int, ppm_y: Optional[int] = None) -> bytes:
    body = _CHUNK_PHYS + build_phys_payload(ppm_x, ppm_x if ppm_y is None else ppm_y)
    return struct.pack(">I", _PHYS_DATA_LENGTH) + body + struct.pack(">I", png_crc32(body))


def read_png_chunks(data: bytes) -> list[PngChunk]:
    """シグネチャ以降のチャンクを IEND まで列挙する。"""
    if not data.startswith(PNG_SIGNATURE):
        raise MalformedContainer("PNGシグネチャがありません")

    chunks: list[PngChunk] = []
    pos = len(PNG_SIGNATURE)
    size = len(data)
    while pos < size:
        if pos + 12 > size:
            raise MalformedContainer(f"チャンクヘッダが途中で切れています (offset={pos})")
        length, chunk_type = struct.unpack_from(">I4s", data, pos)
        end = pos + 12 + length
        if end > size:
            raise MalformedContainer(f"{chunk_type!r} チャンクが途中で切れています (offset={pos})")
        (crc,) = struct.unpack_from(">I", data, end - 4)
        chunk = PngChunk(type=chunk_type, offset=pos, length=length, crc=crc)
        chunks.append(chunk)
        pos = end
        if chunk_type == _CHUNK_IEND:
            break
    return chunks


def read_png_phys(data: bytes) -> Optional[Tuple[int, int, int]]:
    """``pHYs`` の (X, Y, 単位) を返す。なければ None。"""
    for chunk in read_png_chunks(data):
        if chunk.type == _CHUNK_PHYS and chunk.length == _PHYS_DATA_LENGTH:
            return struct.unpack_from(">IIB", data, chunk.data_offset)  # type: ignore[return-value]
    return None


def read_jfif_density(data: bytes) -> Optional[Tuple[int, int, int]]:
    """JFIF APP0 の (単位, X密度, Y密度) を返す。なければ None。"""
    if not data.startswith(JPEG_SOI):
        return None
    offset = _find_jfif_app0(data)
    if offset is None:
        return None
    units_offset = _jfif_units_offset(offset)
    units = data[units_offset]
    x_density, y_density = struct.unpack_from(">HH", data, units_offset + 1)
    return units, x_density, y_density


def tag_resolution(data: bytes, output_format: Union[ContainerFormat, str], dpi: Union[int, float]) -> bytes:
    """解像度メタデータを書き込んだバイト列を返す。書き込めない場合は入力そのまま。"""
    tagged, _outcome = tag_resolution_with_outcome(data, output_format, dpi)
    return tagged


def tag_resolution_with_outcome(
    data: bytes,
    output_format: Union[ContainerFormat, str],
    dpi: Union[int, float],
) -> Tuple[bytes, TagOutcome]:
    fmt = ContainerFormat.coerce(output_format)
    if fmt is ContainerFormat.PNG:
        return _tag_png(data, dpi)
    if fmt is ContainerFormat.JPEG:
        return _tag_jpeg(data, dpi)
    raise ValueError(f"未対応の出力形式です: {fmt}")  # pragma: no cover


def _tag_png(data: bytes, dpi: Union[int, float]) -> Tuple[bytes, TagOutcome]:
    if not data.startswith(PNG_SIGNATURE):
        return data, TagOutcome.NO_SIGNATURE
    try:
        chunks = read_png_chunks(data)
    except MalformedContainer as e:
        logger.warning(f"PNGの構造を解析できないためDPIを書き込みません: {e}")
        return data, TagOutcome.MALFORMED

    ppm = dpi_to_ppm(dpi)
    ihdr_end: Optional[int] = None
    for chunk in chunks:
        if chunk.type == _CHUNK_IHDR and ihdr_end is None:
            ihdr_end = chunk.end
        elif chunk.type == _CHUNK_PHYS:
            if chunk.length != _PHYS_DATA_LENGTH:
                logger.warning(f"pHYs チャンクの長さが不正です: {chunk.length}")
                return data, TagOutcome.MALFORMED
            out = bytearray(data)
            data_start = chunk.data_offset
            data_end = data_start + _PHYS_DATA_LENGTH
            out[data_start:data_end] = build_phys_payload(ppm, ppm)
            crc = png_crc32(bytes(out[chunk.offset + 4 : data_end]))
            struct.pack_into(">I", out, data_end, crc)
            return bytes(out), TagOutcome.UPDATED

    if ihdr_end is None:
        logger.warning("IHDR チャンクが見つからないためDPIを書き込みません")
        return data, TagOutcome.MALFORMED

    return data[:ihdr_end] + build_phys_chunk(ppm) + data[ihdr_end:], TagOutcome.INSERTED


def _tag_jpeg(data: bytes, dpi: Union[int, float]) -> Tuple[bytes, TagOutcome]:
    if not data.startswith(JPEG_SOI):
        return data, TagOutcome.NO_SIGNATURE

    offset = _find_jfif_app0(data)
    if offset is None:
        return data, TagOutcome.NO_JFIF

    density = max(0, min(_MAX_U16, int(round(dpi))))
    out = bytearray(data)
    units_offset = _jfif_units_offset(offset)
    out[units_offset] = _JFIF_UNIT_DPI
    struct.pack_into(">HH", out, units_offset + 1, density, density)
    return bytes(out), TagOutcome.UPDATED


def _jfif_units_offset(segment_offset: int) -> int:
    # マーカー(2) + 長さ(2) + "JFIF\0"(5) + バージョン(2)
    return segment_offset + 2 + 2 + len(_JFIF_IDENTIFIER) + 2


def _find_jfif_app0(data: bytes) -> Optional[int]:
    """JFIF APP0 セグメント先頭(0xFF)のオフセットを返す。SOS以降は探さない。"""
    pos = len(JPEG_SOI)
    size = len(data)
    while pos + 2 <= size:
        if data[pos] != 0xFF:
            return None
        marker = data[pos + 1]
        if marker == 0xFF:
            # 連続する 0xFF はフィルバイト
            pos += 1
            continue
        if marker in _STANDALONE_MARKERS:
            pos += 2
            continue
        if marker in (_MARKER_SOS, _MARKER_EOI):
            return None
        if pos + 4 > size:
            return None
        (length,) = struct.unpack_from(">H", data, pos + 2)
        if length < 2 or pos + 2 + length > size:
            return None
        if (
            marker == _MARKER_APP0
            and length >= _JFIF_MIN_SEGMENT_LENGTH
            and data[pos + 4 : pos + 4 + len(_JFIF_IDENTIFIER)] == _JFIF_IDENTIFIER
        ):
            return pos
        pos += 2 + length
    return None
