"""ログ出力先の設定と、実行ごとのログ/summaryの保持ポリシー。"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from loguru import logger

APP_NAME = "BulkResizer"
LOG_DIR_ENV = "BULK_RESIZER_LOG_DIR"
DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_FILES = 100
_RUN_LOG_PREFIX = "run_"
_RUN_LOG_SUFFIX = ".log"
_RUN_SUMMARY_SUFFIX = "_summary.json"

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{function}</cyan>: <white>{message}</white>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {thread.name} | {function}: {message}"


@dataclass(frozen=True)
class RunLogArtifacts:
    run_id: str
    log_dir: Path
    run_log_path: Path
    summary_path: Path


def configure_logging(
    console_level: str = "INFO",
    run_log_path: Optional[Union[str, Path]] = None,
    file_level: str = "DEBUG",
) -> None:
    """loguru のシンクを張り替える。"""
    logger.remove()  # デフォルト設定を削除
    logger.add(
        sys.stderr,
        format=_CONSOLE_FORMAT,
        colorize=True,
        level=console_level,
    )
    if run_log_path is not None:
        logger.add(
            str(run_log_path),
            format=_FILE_FORMAT,
            rotation="10 MB",
            level=file_level,
            encoding="utf-8",
            enqueue=True,
        )


def get_default_log_dir(
    app_name: str = APP_NAME,
    *,
    os_name: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """OSごとの標準ログディレクトリを返す。``BULK_RESIZER_LOG_DIR`` があれば優先する。"""
    resolved_os_name = os_name or os.name
    resolved_env = os.environ if env is None else env
    resolved_home = home or Path.home()
    app_dir_name = app_name.strip().replace(" ", "")
    app_dir_name_lc = app_dir_name.lower()

    override = resolved_env.get(LOG_DIR_ENV)
    if override:
        return Path(override)

    if resolved_os_name == "nt":
        local_app_data = resolved_env.get("LOCALAPPDATA") or resolved_env.get("APPDATA")
        if local_app_data:
            return Path(local_app_data) / app_dir_name / "logs"
        return resolved_home / f".{app_dir_name_lc}" / "logs"

    state_home = resolved_env.get("XDG_STATE_HOME")
    if state_home:
        return Path(state_home) / app_dir_name_lc / "logs"

    return resolved_home / ".local" / "state" / app_dir_name_lc / "logs"


def create_run_log_artifacts(
    app_name: str = APP_NAME,
    *,
    log_dir: Optional[Path] = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    max_files: int = DEFAULT_MAX_FILES,
    now: Optional[datetime] = None,
) -> RunLogArtifacts:
    """実行ごとのログ/summaryファイルパスを作成して返す。"""
    now_dt = now or datetime.now()
    run_id = now_dt.strftime("%Y%m%d_%H%M%S")
    resolved_dir = log_dir or get_default_log_dir(app_name=app_name)
    resolved_dir.mkdir(parents=True, exist_ok=True)
    prune_run_files(resolved_dir, retention_days=retention_days, max_files=max_files, now=now_dt)
    return RunLogArtifacts(
        run_id=run_id,
        log_dir=resolved_dir,
        run_log_path=resolved_dir / f"{_RUN_LOG_PREFIX}{run_id}{_RUN_LOG_SUFFIX}",
        summary_path=resolved_dir / f"{_RUN_LOG_PREFIX}{run_id}{_RUN_SUMMARY_SUFFIX}",
    )


def prune_run_files(
    log_dir: Path,
    *,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    max_files: int = DEFAULT_MAX_FILES,
    now: Optional[datetime] = None,
) -> list[Path]:
    """保持日数・保持件数を超える実行ログを削除する。"""
    now_dt = now or datetime.now()
    cutoff = now_dt - timedelta(days=max(0, retention_days))

    removed: list[Path] = []
    for path in _list_run_files(log_dir):
        try:
            modified_at = datetime.fromtimestamp(path.stat().st_mtime)
        except OSError:
            continue
        if modified_at < cutoff and _safe_unlink(path):
            removed.append(path)

    remaining = _list_run_files(log_dir)
    if max_files > 0 and len(remaining) > max_files:
        for path in remaining[: len(remaining) - max_files]:
            if _safe_unlink(path):
                removed.append(path)

    if removed:
        logger.debug(f"古い実行ログを削除: {len(removed)} 件")
    return removed


def write_run_summary(summary_path: Path, payload: dict[str, Any]) -> None:
    """summary JSON をアトミックに保存する。"""
    summary_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = summary_path.with_suffix(f"{summary_path.suffix}.tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, ensure_ascii=False, indent=2)
    tmp_path.replace(summary_path)


def _list_run_files(log_dir: Path) -> list[Path]:
    try:
        files = [path for path in log_dir.iterdir() if _is_run_file(path)]
    except OSError:
        return []
    return sorted(files, key=lambda p: p.stat().st_mtime)


def _is_run_file(path: Path) -> bool:
    if not path.is_file():
        return False

    name = path.name
    if not name.startswith(_RUN_LOG_PREFIX):
        return False

    for suffix in (_RUN_LOG_SUFFIX, _RUN_SUMMARY_SUFFIX):
        if name.endswith(suffix):
            return _is_run_id(name[len(_RUN_LOG_PREFIX) : -len(suffix)])
    return False


def _is_run_id(value: str) -> bool:
    try:
        datetime.strptime(value, "%Y%m%d_%H%M%S")
    except ValueError:
        return False
    return True


def _safe_unlink(path: Path) -> bool:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        return False
    return True
