"""一括リサイズ設定の永続化ストア。"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

SCHEMA_VERSION = 1
_SETTINGS_FILENAME = "settings.json"
_APP_DIR_NAME = "BulkResizer"


def default_batch_settings() -> dict[str, Any]:
    """設定のデフォルト値を返す。"""
    return {
        "schema_version": SCHEMA_VERSION,
        "mode": "contain",
        "background": "#ffffff",
        "keep_transparency": True,
        "dpi": 300,
        "concurrency": "balanced",
        "filename_pattern": "{basename}_{width}x{height}",
        "folder_strategy": "bySize",
        "profile": "",
        "convert_jpg_to_png": False,
        "quality": 92,
        "sharpen": False,
        "duplicate_policy": "reject",
        "retries": 0,
        "selected_sizes": ["pod-default-4500x5400"],
        "custom_sizes": [],
        "last_input_dir": "",
        "last_output_dir": "",
    }


class BatchSettingsStore:
    """設定のロード/保存を行う。"""

    def __init__(self, settings_path: Optional[Path] = None) -> None:
        self.settings_path = settings_path or self._build_default_settings_path()

    def load(self) -> dict[str, Any]:
        """設定を読み込む。ファイルがなければデフォルト値。"""
        settings = default_batch_settings()
        loaded = self._read_json(self.settings_path)
        if loaded is not None:
            settings.update(loaded)
        settings["schema_version"] = SCHEMA_VERSION
        return settings

    def save(self, settings: Mapping[str, Any]) -> None:
        """設定を保存する。"""
        payload = default_batch_settings()
        payload.update(dict(settings))
        payload["schema_version"] = SCHEMA_VERSION

        self.settings_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.settings_path.with_suffix(f"{self.settings_path.suffix}.tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
        tmp_path.replace(self.settings_path)

    @staticmethod
    def _read_json(path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning(f"設定ファイルを読み込めません: {path} ({e})")
            return None
        if not isinstance(data, dict):
            logger.warning(f"設定ファイルの形式が不正です: {path}")
            return None
        return data

    @staticmethod
    def _build_default_settings_path() -> Path:
        if os.name == "nt":
            app_data = os.environ.get("APPDATA")
            if app_data:
                return Path(app_data) / _APP_DIR_NAME / _SETTINGS_FILENAME
            return Path.home() / ".bulkresizer" / _SETTINGS_FILENAME

        config_home = os.environ.get("XDG_CONFIG_HOME")
        if config_home:
            return Path(config_home) / "bulkresizer" / _SETTINGS_FILENAME
        return Path.home() / ".config" / "bulkresizer" / _SETTINGS_FILENAME
