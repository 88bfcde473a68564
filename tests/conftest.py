"""
pytest設定ファイル
共通のフィクスチャやテスト設定を定義
"""

from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image

from bulk_resizer.size_catalog import SizeOrigin, SizeSpec
from bulk_resizer.source_registry import Source, decode_source


def encode(image: Image.Image, fmt: str = "PNG", **kwargs) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, fmt, **kwargs)
    return buffer.getvalue()


def make_source(
    name: str,
    width: int,
    height: int,
    *,
    source_id: str = "src-0001",
    fmt: str = "PNG",
    color=(200, 40, 40, 255),
) -> Source:
    """Pillow で作った画像を一度エンコードしてから Source にする"""
    mode = "RGBA" if fmt == "PNG" else "RGB"
    fill = color if mode == "RGBA" else color[:3]
    return decode_source(encode(Image.new(mode, (width, height), fill), fmt), name, source_id)


def make_size(width: int, height: int, size_id: str = "") -> SizeSpec:
    return SizeSpec(size_id or f"custom-{width}x{height}", width, height, "Custom", SizeOrigin.CUSTOM)


@pytest.fixture(autouse=True)
def isolated_app_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """ログ・設定の保存先をテスト用ディレクトリへ逃がす"""
    monkeypatch.setenv("BULK_RESIZER_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "config"))
    return tmp_path


@pytest.fixture
def sample_images(tmp_path: Path) -> dict[str, Path]:
    """様々なフォーマットのサンプル画像を作成するフィクスチャ"""
    folder = tmp_path / "images"
    folder.mkdir()
    images = {}

    # 正方形PNG（透過あり）
    png_path = folder / "A.png"
    Image.new("RGBA", (1000, 1000), color=(0, 255, 0, 128)).save(png_path, "PNG")
    images["png"] = png_path

    # 横長PNG
    wide_path = folder / "B.png"
    Image.new("RGB", (2000, 1000), color=(0, 0, 255)).save(wide_path, "PNG")
    images["wide"] = wide_path

    # JPEG画像
    jpeg_path = folder / "photo.jpg"
    Image.new("RGB", (1200, 800), color=(255, 0, 0)).save(jpeg_path, "JPEG", quality=90)
    images["jpeg"] = jpeg_path

    return images


@pytest.fixture
def broken_image(tmp_path: Path) -> Path:
    path = tmp_path / "broken.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\nnot really a png")
    return path
