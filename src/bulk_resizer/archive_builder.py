"""完了ジョブの出力を1つのZIPにまとめる。

エントリはジョブID順に並べ、タイムスタンプと属性を固定するため、
同じ入力からは常に同じバイト列が得られる。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import io
import os
from pathlib import Path
import re
import time
import unicodedata
import uuid
import zipfile
import zlib
from typing import Iterable, Optional, Sequence, Union

from loguru import logger

from .errors import ArchiveWriteFailure, DuplicatePath
from .image_encode_pipeline import ContainerFormat
from .job_planner import Job, JobStatus

DEFAULT_FILENAME_PATTERN = "{basename}_{width}x{height}"
DEFAULT_ARCHIVE_NAME = "bulk-resizer.zip"

# ZIPで表現できる最古の日時。実行日時に依存させない
_FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
_FILE_MODE = 0o644
_CREATE_SYSTEM_UNIX = 3
_COMPRESS_LEVEL = 6

_TOKEN_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}|\{(\w+)\}")
_INVALID_CHARS = '<>:"/\\|?*'
_WINDOWS_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9",
}
_MAX_COMPONENT_LENGTH = 200


class FolderStrategy(str, Enum):
    BY_SIZE = "bySize"
    BY_IMAGE = "byImage"
    FLAT = "flat"

    @classmethod
    def coerce(cls, value: Union["FolderStrategy", str]) -> "FolderStrategy":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().replace("_", "").replace("-", "").lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValueError(f"未対応のフォルダ構成です: {value!r}")


class DuplicatePolicy(str, Enum):
    REJECT = "reject"
    LAST_WRITE_WINS = "last_write_wins"

    @classmethod
    def coerce(cls, value: Union["DuplicatePolicy", str]) -> "DuplicatePolicy":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().replace("-", "_").lower()
        if normalized == "overwrite":
            return cls.LAST_WRITE_WINS
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"未対応の重複時ポリシーです: {value!r}") from None


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    data: bytes
    job_id: str = ""


def sanitize_path_component(name: str) -> str:
    """ZIP内パスの1要素として安全な文字列にする。"""
    text = unicodedata.normalize("NFC", str(name))
    text = "".join("_" if (ch in _INVALID_CHARS or ord(ch) < 32) else ch for ch in text)
    text = text.strip().rstrip(". ")
    if text in {"", ".", ".."}:
        return "untitled"
    if text.split(".")[0].upper() in _WINDOWS_RESERVED_NAMES:
        text = f"_{text}"
    return text[:_MAX_COMPONENT_LENGTH]


def render_filename(
    pattern: str,
    *,
    basename: str,
    width: int,
    height: int,
    profile: str = "",
) -> str:
    """ファイル名パターンのトークンを置換する。

    ``{basename}`` ``{width}`` ``{height}`` ``{profile}`` に加え、
    ``{{basename}}`` のような二重波括弧も受け付ける。未知のトークンはそのまま残す。
    """
    values = {
        "basename": basename,
        "width": str(width),
        "height": str(height),
        "profile": profile,
    }

    def _replace(match: "re.Match[str]") -> str:
        token = match.group(1) or match.group(2)
        return values.get(token, match.group(0))

    return sanitize_path_component(_TOKEN_PATTERN.sub(_replace, pattern or DEFAULT_FILENAME_PATTERN))


def build_entry_path(
    *,
    basename: str,
    width: int,
    height: int,
    output_format: Union[ContainerFormat, str],
    filename_pattern: str = DEFAULT_FILENAME_PATTERN,
    folder_strategy: Union[FolderStrategy, str] = FolderStrategy.BY_SIZE,
    profile: str = "",
) -> str:
    fmt = ContainerFormat.coerce(output_format)
    strategy = FolderStrategy.coerce(folder_strategy)
    name = render_filename(filename_pattern, basename=basename, width=width, height=height, profile=profile)
    filename = f"{name}.{fmt.extension}"
    if strategy is FolderStrategy.BY_SIZE:
        return f"{width}x{height}/{filename}"
    if strategy is FolderStrategy.BY_IMAGE:
        return f"{sanitize_path_component(basename)}/{filename}"
    return filename


def suggest_archive_name(basenames: Sequence[str], dpi: Optional[int] = None) -> str:
    """出力ZIPのファイル名候補。画像が1枚ならその名前を使う。"""
    if len(basenames) == 1:
        suffix = f"_{dpi}dpi" if dpi else ""
        return f"{sanitize_path_component(basenames[0])}_resized{suffix}.zip"
    return DEFAULT_ARCHIVE_NAME


class ArchiveBuilder:
    """完了ジョブからZIPを作る。"""

    def __init__(
        self,
        filename_pattern: str = DEFAULT_FILENAME_PATTERN,
        folder_strategy: Union[FolderStrategy, str] = FolderStrategy.BY_SIZE,
        *,
        profile: str = "",
        duplicate_policy: Union[DuplicatePolicy, str] = DuplicatePolicy.REJECT,
    ) -> None:
        self.filename_pattern = filename_pattern or DEFAULT_FILENAME_PATTERN
        self.folder_strategy = FolderStrategy.coerce(folder_strategy)
        self.profile = profile
        self.duplicate_policy = DuplicatePolicy.coerce(duplicate_policy)

    def entry_path_for(self, job: Job) -> str:
        return build_entry_path(
            basename=job.source.basename,
            width=job.size.width,
            height=job.size.height,
            output_format=job.output_format or ContainerFormat.PNG,
            filename_pattern=self.filename_pattern,
            folder_strategy=self.folder_strategy,
            profile=self.profile,
        )

    def plan_entries(self, jobs: Iterable[Job], outputs: Optional[dict[str, bytes]] = None) -> list[ArchiveEntry]:
        """done ジョブだけをエントリにする。``outputs`` があればそちらのバイト列を使う。"""
        entries: list[ArchiveEntry] = []
        for job in jobs:
            if job.status is not JobStatus.DONE:
                continue
            data = outputs.get(job.id) if outputs is not None else job.output_bytes
            if data is None:
                continue
            entries.append(ArchiveEntry(path=self.entry_path_for(job), data=data, job_id=job.id))
        return entries

    def build(self, jobs: Iterable[Job], outputs: Optional[dict[str, bytes]] = None) -> bytes:
        return self.build_from_entries(self.plan_entries(jobs, outputs))

    def build_from_entries(self, entries: Iterable[ArchiveEntry]) -> bytes:
        ordered = self._resolve_duplicates(sorted(entries, key=lambda e: (e.job_id, e.path)))
        buffer = io.BytesIO()
        try:
            with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for entry in ordered:
                    info = zipfile.ZipInfo(entry.path, date_time=_FIXED_DATE_TIME)
                    info.compress_type = zipfile.ZIP_DEFLATED
                    info.create_system = _CREATE_SYSTEM_UNIX
                    info.external_attr = _FILE_MODE << 16
                    zf.writestr(info, entry.data, compresslevel=_COMPRESS_LEVEL)
        except (OSError, ValueError, zipfile.LargeZipFile, zlib.error) as e:
            raise ArchiveWriteFailure(str(e)) from e

        archive = buffer.getvalue()
        logger.info(f"ZIP作成: {len(ordered)} エントリ / {len(archive)} bytes")
        return archive

    def _resolve_duplicates(self, entries: list[ArchiveEntry]) -> list[ArchiveEntry]:
        by_path: dict[str, ArchiveEntry] = {}
        owners: dict[str, list[str]] = {}
        for entry in entries:
            owners.setdefault(entry.path, []).append(entry.job_id)
            if entry.path in by_path:
                if self.duplicate_policy is DuplicatePolicy.REJECT:
                    raise DuplicatePath(entry.path, tuple(owners[entry.path]))
                logger.warning(f"同じパスを上書きします: {entry.path} ({' -> '.join(owners[entry.path])})")
                del by_path[entry.path]
            by_path[entry.path] = entry
        return list(by_path.values())


def save_archive(archive: bytes, dest_path: Union[str, Path]) -> Path:
    """ZIPを一時ファイル経由で書き出し、壊れた最終ファイルを残さない。"""
    final_path = Path(dest_path)
    tmp_path = final_path.with_name(f".{final_path.name}.{os.getpid()}_{time.time_ns()}_{uuid.uuid4().hex[:10]}.tmp")
    try:
        final_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_bytes(archive)
        os.replace(str(tmp_path), str(final_path))
    except OSError as e:
        raise ArchiveWriteFailure(f"{final_path}: {e}") from e
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                logger.warning(f"一時ファイルの削除に失敗: {tmp_path}")
    return final_path
