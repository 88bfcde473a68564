"""出力サイズのプリセットとユーザー追加サイズを扱う。"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Any, Iterable, Mapping, Optional

from loguru import logger

from .errors import InvalidSize

_SIZE_TEXT_PATTERN = re.compile(r"^\s*(\d+)\s*[xX×]\s*(\d+)\s*$")
_CUSTOM_ID_PREFIX = "custom-"


class SizeOrigin(str, Enum):
    PRESET = "preset"
    CUSTOM = "custom"


@dataclass(frozen=True)
class SizeSpec:
    id: str
    width: int
    height: int
    label: Optional[str] = None
    origin: SizeOrigin = SizeOrigin.PRESET
    note: str = ""

    @property
    def dimensions_text(self) -> str:
        return f"{self.width}x{self.height}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "width": self.width,
            "height": self.height,
            "label": self.label,
            "origin": self.origin.value,
            "note": self.note,
        }


def builtin_size_presets() -> list[SizeSpec]:
    """組み込みプリセット（プリントオンデマンド向け）。"""
    return [
        SizeSpec("pod-default-4500x5400", 4500, 5400, "POD Default", note='Standard POD (15×18" at 300 DPI)'),
        SizeSpec("tumbler-wrap-2790x2460", 2790, 2460, "Tumbler Wrap"),
        SizeSpec("square-1024x1024", 1024, 1024, "Square", note="Square preview"),
        SizeSpec("standard-mockup-2000x1500", 2000, 1500, "Standard Mockup"),
        SizeSpec("mug-swiftpod-2625x1050", 2625, 1050, "11oz Mug (SwiftPOD)", note="Mug 11oz template"),
        SizeSpec("mug-district-2475x1156", 2475, 1156, "11oz Mug (District)"),
        SizeSpec("legacy-square-3000x3000", 3000, 3000, "Legacy Square", note='10×10" at 300 DPI'),
        SizeSpec("mockup-base-1500x2000", 1500, 2000, "Mockup Base", note='5×6.67" at 300 DPI'),
        SizeSpec("etsy-4x3-2700x2025", 2700, 2025, "Etsy 4:3"),
        SizeSpec("generic-kdp-2048x2048", 2048, 2048, "Generic / KDP"),
    ]


def parse_size_text(text: str) -> tuple[int, int]:
    """``"4500x5400"`` 形式の文字列を (幅, 高さ) に変換する。"""
    match = _SIZE_TEXT_PATTERN.match(str(text))
    if not match:
        raise InvalidSize(f"サイズは 幅x高さ の形式で指定してください: {text!r}")
    width, height = int(match.group(1)), int(match.group(2))
    validate_dimensions(width, height)
    return width, height


def validate_dimensions(width: Any, height: Any) -> None:
    if isinstance(width, bool) or isinstance(height, bool):
        raise InvalidSize(f"幅と高さは整数で指定してください: {width!r}x{height!r}")
    if not isinstance(width, int) or not isinstance(height, int):
        raise InvalidSize(f"幅と高さは整数で指定してください: {width!r}x{height!r}")
    if width <= 0 or height <= 0:
        raise InvalidSize(f"幅と高さは1以上で指定してください: {width}x{height}")


def custom_size_id(width: int, height: int) -> str:
    return f"{_CUSTOM_ID_PREFIX}{width}x{height}"


class SizeCatalog:
    """組み込みプリセット＋カスタムサイズのカタログ。"""

    def __init__(
        self,
        presets: Optional[Iterable[SizeSpec]] = None,
        custom_sizes: Optional[Iterable[SizeSpec]] = None,
    ) -> None:
        self._presets: dict[str, SizeSpec] = {}
        self._custom: dict[str, SizeSpec] = {}
        for spec in builtin_size_presets() if presets is None else presets:
            self._register(self._presets, spec)
        for spec in custom_sizes or ():
            self._register(self._custom, spec)

    def _register(self, bucket: dict[str, SizeSpec], spec: SizeSpec) -> None:
        validate_dimensions(spec.width, spec.height)
        if spec.id in self._presets or spec.id in self._custom:
            raise InvalidSize(f"サイズIDが重複しています: {spec.id}")
        bucket[spec.id] = spec

    def presets(self) -> list[SizeSpec]:
        return list(self._presets.values())

    def custom_sizes(self) -> list[SizeSpec]:
        return list(self._custom.values())

    def all(self) -> list[SizeSpec]:
        return self.presets() + self.custom_sizes()

    def __len__(self) -> int:
        return len(self._presets) + len(self._custom)

    def __contains__(self, size_id: object) -> bool:
        return size_id in self._presets or size_id in self._custom

    def get(self, size_id: str) -> SizeSpec:
        spec = self._presets.get(size_id) or self._custom.get(size_id)
        if spec is None:
            raise InvalidSize(f"未登録のサイズIDです: {size_id}")
        return spec

    def add_custom(self, width: int, height: int, label: Optional[str] = None) -> SizeSpec:
        """カスタムサイズを追加する。同じ寸法が既にあればそれを返す。"""
        validate_dimensions(width, height)
        size_id = custom_size_id(width, height)
        existing = self._custom.get(size_id)
        if existing is not None:
            return existing
        spec = SizeSpec(
            id=size_id,
            width=width,
            height=height,
            label=label or "Custom",
            origin=SizeOrigin.CUSTOM,
        )
        self._custom[size_id] = spec
        logger.debug(f"カスタムサイズを追加: {spec.dimensions_text}")
        return spec

    def remove_custom(self, size_id: str) -> bool:
        return self._custom.pop(size_id, None) is not None

    def select(self, size_ids: Iterable[str]) -> list[SizeSpec]:
        """ID順にサイズを選択する。重複IDは最初のものだけ残す。"""
        selected: list[SizeSpec] = []
        seen: set[str] = set()
        for size_id in size_ids:
            if size_id in seen:
                continue
            seen.add(size_id)
            selected.append(self.get(size_id))
        return selected

    def resolve(self, token: str) -> SizeSpec:
        """プリセットIDまたは ``幅x高さ`` 文字列からサイズを得る。"""
        if token in self:
            return self.get(token)
        width, height = parse_size_text(token)
        for spec in self.all():
            if spec.width == width and spec.height == height:
                return spec
        return self.add_custom(width, height)

    def to_settings(self) -> list[str]:
        return [spec.dimensions_text for spec in self._custom.values()]

    @classmethod
    def from_settings(cls, values: Mapping[str, Any]) -> "SizeCatalog":
        catalog = cls()
        for text in values.get("custom_sizes") or []:
            try:
                width, height = parse_size_text(text)
            except InvalidSize:
                logger.warning(f"保存済みカスタムサイズを無視します: {text!r}")
                continue
            catalog.add_custom(width, height)
        return catalog
