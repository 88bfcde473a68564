"""デコード済み入力画像の登録簿。"""

from __future__ import annotations

from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
import io
import threading
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence, Union

from PIL import Image, ImageOps, UnidentifiedImageError
from loguru import logger

from .errors import DecodeFailure

SUPPORTED_INPUT_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".bmp", ".gif", ".tif", ".tiff")


@dataclass(frozen=True)
class Source:
    """デコード済みの入力画像。生成後は変更しない。"""

    id: str
    name: str
    width: int
    height: int
    image: Image.Image
    source_format: str = ""

    @property
    def basename(self) -> str:
        return Path(self.name).stem or self.name

    @property
    def is_jpeg(self) -> bool:
        return self.source_format.upper() in {"JPEG", "MPO"}


def decode_source(data: bytes, name: str, source_id: str) -> Source:
    """バイト列をデコードして Source を作る。失敗時は DecodeFailure。"""
    if not data:
        raise DecodeFailure(f"{name}: 空のファイルです")
    try:
        with Image.open(io.BytesIO(data)) as opened:
            source_format = (opened.format or "").upper()
            opened.load()
            # EXIFの回転情報を画素へ反映し、以降は向きを気にしない
            img = ImageOps.exif_transpose(opened)
            if img is opened:
                img = opened.copy()
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise DecodeFailure(f"{name}: {e}") from e
    except (OSError, ValueError, SyntaxError) as e:
        raise DecodeFailure(f"{name}: 画像データが壊れています ({e})") from e

    width, height = img.size
    if width <= 0 or height <= 0:
        raise DecodeFailure(f"{name}: 画像サイズが不正です ({width}x{height})")

    logger.debug(f"デコード完了: {name} ({source_format or '?'} {width}x{height} {img.mode})")
    return Source(
        id=source_id,
        name=name,
        width=width,
        height=height,
        image=img,
        source_format=source_format,
    )


def load_source_file(path: Union[str, Path], source_id: str) -> Source:
    file_path = Path(path)
    try:
        data = file_path.read_bytes()
    except OSError as e:
        raise DecodeFailure(f"{file_path.name}: ファイルを読み込めません ({e})") from e
    return decode_source(data, file_path.name, source_id)


def decode_source_async(
    executor: Executor,
    data: bytes,
    name: str,
    source_id: str,
) -> "Future[Source]":
    """デコードを executor に投げて Future を返す。失敗は Future 側に DecodeFailure として載る。"""
    return executor.submit(decode_source, data, name, source_id)


class SourceRegistry:
    """入力画像をIDで保持する。IDは登録順の連番。"""

    def __init__(self, id_prefix: str = "src") -> None:
        self._id_prefix = id_prefix
        self._sources: dict[str, Source] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def _next_id(self) -> str:
        with self._lock:
            self._counter += 1
            return f"{self._id_prefix}-{self._counter:04d}"

    def add(self, source: Source) -> Source:
        with self._lock:
            if source.id in self._sources:
                raise ValueError(f"ソースIDが重複しています: {source.id}")
            self._sources[source.id] = source
        return source

    def add_image(self, image: Image.Image, name: str, source_format: str = "") -> Source:
        """デコード済みの Pillow 画像をそのまま登録する。"""
        image.load()
        width, height = image.size
        return self.add(
            Source(
                id=self._next_id(),
                name=name,
                width=width,
                height=height,
                image=image,
                source_format=(source_format or image.format or "").upper(),
            )
        )

    def add_bytes(self, data: bytes, name: str) -> Source:
        return self.add(decode_source(data, name, self._next_id()))

    def add_file(self, path: Union[str, Path]) -> Source:
        return self.add(load_source_file(path, self._next_id()))

    def add_files(
        self,
        paths: Sequence[Union[str, Path]],
        max_workers: int = 4,
    ) -> tuple[list[Source], list[tuple[Path, DecodeFailure]]]:
        """複数ファイルを並列にデコードし、入力順に登録する。

        Returns:
            (登録できた Source のリスト, (パス, 例外) のリスト)
        """
        planned = [(Path(p), self._next_id()) for p in paths]
        added: list[Source] = []
        failures: list[tuple[Path, DecodeFailure]] = []
        if not planned:
            return added, failures

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(planned)))) as pool:
            futures = [(path, pool.submit(load_source_file, path, source_id)) for path, source_id in planned]
            for path, future in futures:
                try:
                    added.append(self.add(future.result()))
                except DecodeFailure as e:
                    logger.warning(f"読み込み失敗: {path} - {e}")
                    failures.append((path, e))
        return added, failures

    def get(self, source_id: str) -> Source:
        try:
            return self._sources[source_id]
        except KeyError:
            raise KeyError(f"未登録のソースIDです: {source_id}") from None

    def remove(self, source_id: str) -> bool:
        with self._lock:
            removed = self._sources.pop(source_id, None)
        if removed is not None:
            removed.image.close()
        return removed is not None

    def clear(self) -> None:
        with self._lock:
            sources = list(self._sources.values())
            self._sources.clear()
        for source in sources:
            source.image.close()

    def sources(self) -> list[Source]:
        return list(self._sources.values())

    def __len__(self) -> int:
        return len(self._sources)

    def __iter__(self) -> Iterator[Source]:
        return iter(self.sources())


def discover_image_paths(
    inputs: Iterable[Union[str, Path]],
    *,
    recursive: bool = True,
    extensions: Optional[Sequence[str]] = None,
) -> list[Path]:
    """ファイル/フォルダ指定から画像パスを集める。フォルダ内は名前順。"""
    exts = {e.lower() if e.startswith(".") else f".{e.lower()}" for e in (extensions or SUPPORTED_INPUT_EXTENSIONS)}
    found: list[Path] = []
    seen: set[str] = set()

    def _add(path: Path) -> None:
        marker = str(path).lower()
        if marker in seen:
            return
        seen.add(marker)
        found.append(path)

    for item in inputs:
        path = Path(item)
        if path.is_dir():
            pattern = "**/*" if recursive else "*"
            children = [p for p in path.glob(pattern) if p.is_file() and p.suffix.lower() in exts]
            for child in sorted(children, key=lambda p: str(p).lower()):
                _add(child)
        elif path.is_file():
            _add(path)
        else:
            logger.warning(f"入力が見つかりません: {path}")
    return found
