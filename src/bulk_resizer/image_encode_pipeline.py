"""描画済みバッファを PNG / JPEG のバイト列へ書き出す。"""

from __future__ import annotations

from enum import Enum
import io
from typing import Any, Dict, Union

from PIL import Image
from loguru import logger

from .errors import ContextUnavailable, EncodeFailure
from .resample_engine import RGBA, WHITE, parse_color

DEFAULT_JPEG_QUALITY = 92


class ContainerFormat(str, Enum):
    PNG = "png"
    JPEG = "jpeg"

    @property
    def extension(self) -> str:
        return "jpg" if self is ContainerFormat.JPEG else "png"

    @property
    def pillow_format(self) -> str:
        return "JPEG" if self is ContainerFormat.JPEG else "PNG"

    @property
    def supports_transparency(self) -> bool:
        return self is ContainerFormat.PNG

    @classmethod
    def coerce(cls, value: Union["ContainerFormat", str]) -> "ContainerFormat":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text == "jpg":
            text = "jpeg"
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"未対応の出力形式です: {value!r}") from None


def resolve_output_format(source_format: str, convert_jpg_to_png: bool = False) -> ContainerFormat:
    """入力形式から出力形式を決める。JPEG入力はJPEGのまま、それ以外はPNG。"""
    if source_format.upper() in {"JPEG", "JPG", "MPO"} and not convert_jpg_to_png:
        return ContainerFormat.JPEG
    return ContainerFormat.PNG


def normalize_quality(value: int) -> int:
    """品質値を1-100に丸める。"""
    return max(1, min(100, int(value)))


def build_encoder_save_kwargs(output_format: ContainerFormat, quality: int = DEFAULT_JPEG_QUALITY) -> Dict[str, Any]:
    """出力形式に応じたエンコーダ設定を返す。

    解像度メタデータは後段でバイト列へ直接書き込むため、ここでは dpi を渡さない。
    """
    if output_format is ContainerFormat.JPEG:
        return {
            "format": "JPEG",
            "quality": min(normalize_quality(quality), 95),
            "optimize": True,
            "progressive": False,
        }
    return {
        "format": "PNG",
        "optimize": False,
        "compress_level": 6,
    }


def encode_image(
    image: Image.Image,
    output_format: Union[ContainerFormat, str],
    quality: int = DEFAULT_JPEG_QUALITY,
    background: Union[str, RGBA] = WHITE,
) -> bytes:
    """画像をエンコードしてバイト列を返す。失敗時は EncodeFailure。"""
    fmt = ContainerFormat.coerce(output_format)
    save_img = image
    if fmt is ContainerFormat.JPEG and save_img.mode in {"RGBA", "LA", "P", "PA"}:
        # JPEGは透過を持てないので背景色へ合成する
        rgba = save_img.convert("RGBA")
        base = Image.new("RGBA", rgba.size, parse_color(background))
        base.alpha_composite(rgba)
        save_img = base.convert("RGB")
    elif fmt is ContainerFormat.JPEG and save_img.mode not in {"RGB", "L"}:
        save_img = save_img.convert("RGB")

    save_kwargs = build_encoder_save_kwargs(fmt, quality)
    buffer = io.BytesIO()
    try:
        save_img.save(buffer, **save_kwargs)
    except MemoryError as e:
        raise ContextUnavailable(f"{fmt.pillow_format} 書き出し用のメモリを確保できません") from e
    except (OSError, ValueError, KeyError) as e:
        raise EncodeFailure(f"{fmt.pillow_format} への書き出しに失敗しました: {e}") from e

    data = buffer.getvalue()
    if not data:
        raise EncodeFailure(f"{fmt.pillow_format} の出力が空です")
    logger.trace(f"encode_image: format={fmt.value} size={image.size} bytes={len(data)}")
    return data
