"""フィットモードに従って入力画像を指定サイズのバッファへ描画する。

どのモードでも出力は必ず ``target_width × target_height`` の RGBA 画像になる。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Union

from PIL import Image, ImageColor, ImageFilter

from .errors import ContextUnavailable, DecodeFailure, InvalidSize

RGBA = Tuple[int, int, int, int]
TRANSPARENT: RGBA = (0, 0, 0, 0)
WHITE: RGBA = (255, 255, 255, 255)

_RESAMPLE_FILTER = Image.Resampling.LANCZOS


class FitMode(str, Enum):
    CONTAIN = "contain"
    COVER = "cover"
    STRETCH = "stretch"
    PAD = "pad"

    @classmethod
    def coerce(cls, value: Union["FitMode", str]) -> "FitMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"未対応のフィットモードです: {value!r}") from None


@dataclass(frozen=True)
class Placement:
    """出力キャンバス上で入力画像を描く矩形。cover では負のオフセットになる。"""

    draw_x: int
    draw_y: int
    draw_width: int
    draw_height: int
    scale_x: float
    scale_y: float


def parse_color(value: Union[str, Tuple[int, ...]]) -> RGBA:
    """``#rrggbb`` などの色指定を RGBA タプルに変換する。"""
    if isinstance(value, tuple):
        if len(value) == 3:
            return (int(value[0]), int(value[1]), int(value[2]), 255)
        if len(value) == 4:
            return (int(value[0]), int(value[1]), int(value[2]), int(value[3]))
        raise ValueError(f"色の指定が不正です: {value!r}")
    color = ImageColor.getcolor(str(value).strip(), "RGBA")
    return color  # type: ignore[return-value]


def compute_placement(
    src_width: int,
    src_height: int,
    target_width: int,
    target_height: int,
    mode: Union[FitMode, str],
) -> Placement:
    """描画位置と拡大率を計算する。"""
    if src_width <= 0 or src_height <= 0:
        raise InvalidSize(f"入力画像のサイズが不正です: {src_width}x{src_height}")
    if target_width <= 0 or target_height <= 0:
        raise InvalidSize(f"出力サイズが不正です: {target_width}x{target_height}")

    fit = FitMode.coerce(mode)
    if fit is FitMode.STRETCH:
        return Placement(
            0,
            0,
            target_width,
            target_height,
            target_width / src_width,
            target_height / src_height,
        )

    if fit is FitMode.COVER:
        scale = max(target_width / src_width, target_height / src_height)
        draw_width = max(target_width, round(src_width * scale))
        draw_height = max(target_height, round(src_height * scale))
    else:
        scale = min(target_width / src_width, target_height / src_height)
        draw_width = min(target_width, max(1, round(src_width * scale)))
        draw_height = min(target_height, max(1, round(src_height * scale)))

    # 余白（cover ではあふれ）を左右・上下に均等配分する
    draw_x = (target_width - draw_width) // 2
    draw_y = (target_height - draw_height) // 2
    return Placement(draw_x, draw_y, draw_width, draw_height, scale, scale)


def resample(
    image: Image.Image,
    target_width: int,
    target_height: int,
    mode: Union[FitMode, str] = FitMode.CONTAIN,
    background: Union[str, RGBA] = WHITE,
    keep_transparency: bool = True,
    sharpen: bool = False,
) -> Image.Image:
    """入力画像を ``target_width × target_height`` の RGBA 画像に描画する。

    Args:
        image: 入力画像（変更しない）
        mode: contain / cover / stretch / pad
        background: 余白や透過部分を埋める色
        keep_transparency: False の場合は背景色で塗ってから描画する。
            pad は常に背景色で塗る。
        sharpen: 縮小後にアンシャープマスクをかける
    """
    fit = FitMode.coerce(mode)
    fill = parse_color(background)
    src_width, src_height = image.size
    placement = compute_placement(src_width, src_height, target_width, target_height, fit)

    src = _as_rgba(image)
    try:
        if fit is FitMode.COVER:
            # はみ出す分を入力側で切り出してから縮小する
            crop_width = target_width / placement.scale_x
            crop_height = target_height / placement.scale_y
            left = (src_width - crop_width) / 2
            top = (src_height - crop_height) / 2
            drawn = src.resize(
                (target_width, target_height),
                _RESAMPLE_FILTER,
                box=(left, top, left + crop_width, top + crop_height),
            )
            offset = (0, 0)
        else:
            drawn = src.resize((placement.draw_width, placement.draw_height), _RESAMPLE_FILTER)
            offset = (placement.draw_x, placement.draw_y)

        if sharpen:
            drawn = _sharpen(drawn)

        canvas_fill = fill if (fit is FitMode.PAD or not keep_transparency) else TRANSPARENT
        canvas = Image.new("RGBA", (target_width, target_height), canvas_fill)
        canvas.alpha_composite(drawn, dest=offset)
    except MemoryError as e:
        raise ContextUnavailable(f"{target_width}x{target_height} の描画領域を確保できません") from e

    return canvas


def _as_rgba(image: Image.Image) -> Image.Image:
    if image.mode == "RGBA":
        return image
    try:
        return image.convert("RGBA")
    except MemoryError as e:
        raise ContextUnavailable("RGBA変換用のメモリを確保できません") from e
    except ValueError as e:
        raise DecodeFailure(f"未対応のピクセル形式です: {image.mode}") from e


def _sharpen(image: Image.Image) -> Image.Image:
    alpha = image.getchannel("A")
    rgb = image.convert("RGB").filter(ImageFilter.UnsharpMask(radius=1.2, percent=80, threshold=2))
    rgb.putalpha(alpha)
    return rgb
