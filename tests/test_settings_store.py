from __future__ import annotations

import json
from pathlib import Path

from bulk_resizer.settings_store import SCHEMA_VERSION, BatchSettingsStore, default_batch_settings


def test_load_returns_defaults_when_missing(tmp_path: Path) -> None:
    store = BatchSettingsStore(settings_path=tmp_path / "settings.json")
    loaded = store.load()
    assert loaded == default_batch_settings()
    assert loaded["mode"] == "contain"
    assert loaded["dpi"] == 300


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    settings_path = tmp_path / "nested" / "settings.json"
    store = BatchSettingsStore(settings_path=settings_path)

    data = default_batch_settings()
    data["mode"] = "cover"
    data["custom_sizes"] = ["640x480"]
    store.save(data)

    assert settings_path.exists()
    assert not settings_path.with_suffix(".json.tmp").exists()
    loaded = store.load()
    assert loaded["mode"] == "cover"
    assert loaded["custom_sizes"] == ["640x480"]
    assert loaded["schema_version"] == SCHEMA_VERSION


def test_partial_file_is_merged_with_defaults(tmp_path: Path) -> None:
    settings_path = tmp_path / "settings.json"
    settings_path.write_text(json.dumps({"dpi": 600}), encoding="utf-8")

    loaded = BatchSettingsStore(settings_path=settings_path).load()
    assert loaded["dpi"] == 600
    assert loaded["folder_strategy"] == "bySize"


def test_broken_file_falls_back_to_defaults(tmp_path: Path) -> None:
    settings_path = tmp_path / "settings.json"
    settings_path.write_text("{not json", encoding="utf-8")
    assert BatchSettingsStore(settings_path=settings_path).load() == default_batch_settings()

    settings_path.write_text("[1, 2]", encoding="utf-8")
    assert BatchSettingsStore(settings_path=settings_path).load() == default_batch_settings()


def test_default_path_uses_xdg_config_home(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr("bulk_resizer.settings_store.os.name", "posix")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    store = BatchSettingsStore()
    assert store.settings_path == tmp_path / "cfg" / "bulkresizer" / "settings.json"
