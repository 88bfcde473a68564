from __future__ import annotations

import io
import json
import zipfile
from pathlib import Path

import pytest
from loguru import logger
from PIL import Image

from bulk_resizer import cli
from bulk_resizer.cli import _build_arg_parser, _build_cli_summary, _parse_size_modes, main
from bulk_resizer.errors import InvalidOption
from bulk_resizer.settings_store import BatchSettingsStore
from conftest import make_size


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger.remove()


def test_cli_parser_defaults() -> None:
    args = _build_arg_parser().parse_args(["in", "--json"])
    assert args.json is True
    assert args.recursive is True
    assert args.mode == "contain"
    assert args.dpi == 300
    assert args.folders == "bySize"


def test_cli_parser_uses_stored_defaults() -> None:
    args = _build_arg_parser({"mode": "cover", "dpi": 600}).parse_args(["in"])
    assert args.mode == "cover"
    assert args.dpi == 600


def test_cli_parser_rejects_dpi_and_no_dpi_together() -> None:
    with pytest.raises(SystemExit):
        _build_arg_parser().parse_args(["in", "--dpi", "300", "--no-dpi"])


def test_build_cli_summary_shape() -> None:
    summary = _build_cli_summary(
        status="error",
        inputs=[Path("input")],
        output=None,
        options=None,
        sizes=[],
        result=None,
        load_failures=[(Path("bad.png"), ValueError("broken"))],
        elapsed_seconds=1.23456,
        message="ng",
        error_category="no_sizes",
    )
    assert summary["status"] == "error"
    assert summary["inputs"] == ["input"]
    assert summary["output"] == ""
    assert summary["elapsed_seconds"] == 1.235
    assert summary["load_failures"] == [{"path": "bad.png", "error": "broken"}]
    assert summary["error_category"] == "no_sizes"


def test_list_presets(capsys) -> None:
    assert main(["--list-presets"]) == 0
    out = capsys.readouterr().out
    assert "pod-default-4500x5400" in out
    assert "4500x5400" in out


def test_end_to_end_json_summary(sample_images, tmp_path: Path, capsys) -> None:
    output = tmp_path / "out.zip"
    code = main(
        [
            str(sample_images["png"]),
            str(sample_images["wide"]),
            "-s",
            "500x500",
            "-s",
            "800x400",
            "--folders",
            "flat",
            "-o",
            str(output),
            "--json",
        ]
    )

    assert code == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["status"] == "success"
    assert summary["summary"]["total"] == 4
    assert summary["summary"]["done"] == 4
    assert len(summary["jobs"]) == 4
    with zipfile.ZipFile(output) as zf:
        assert sorted(zf.namelist()) == ["A_500x500.png", "A_800x400.png", "B_500x500.png", "B_800x400.png"]

    log_dir = tmp_path / "logs"
    assert list(log_dir.glob("run_*_summary.json"))


def test_directory_input_and_default_output_name(sample_images, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    code = main([str(sample_images["jpeg"]), "-p", "square-1024x1024", "--no-progress"])
    assert code == 0
    archive = tmp_path / "photo_resized_300dpi.zip"
    with zipfile.ZipFile(archive) as zf:
        assert zf.namelist() == ["1024x1024/photo_1024x1024.jpg"]


def test_no_sizes_is_validation_error(sample_images, tmp_path: Path) -> None:
    settings_path = tmp_path / "settings.json"
    BatchSettingsStore(settings_path).save({"selected_sizes": []})
    code = main([str(sample_images["png"]), "--settings", str(settings_path), "-o", str(tmp_path / "x.zip")])
    assert code == cli.EXIT_VALIDATION


def test_invalid_size_text_is_validation_error(sample_images, tmp_path: Path) -> None:
    code = main([str(sample_images["png"]), "-s", "0x100", "-o", str(tmp_path / "x.zip")])
    assert code == cli.EXIT_VALIDATION


def test_no_inputs_is_validation_error(tmp_path: Path) -> None:
    code = main([str(tmp_path / "missing"), "-s", "10x10", "-o", str(tmp_path / "x.zip")])
    assert code == cli.EXIT_VALIDATION


def test_duplicate_paths_exit_code(tmp_path: Path, sample_images) -> None:
    other = tmp_path / "other"
    other.mkdir()
    (other / "A.png").write_bytes(sample_images["png"].read_bytes())
    code = main(
        [str(sample_images["png"]), str(other / "A.png"), "-s", "10x10", "--folders", "flat", "-o", str(tmp_path / "x.zip")]
    )
    assert code == cli.EXIT_PACKAGING
    assert not (tmp_path / "x.zip").exists()


def test_broken_input_gives_partial_exit(sample_images, broken_image: Path, tmp_path: Path, capsys) -> None:
    output = tmp_path / "out.zip"
    code = main([str(sample_images["png"]), str(broken_image), "-s", "10x10", "-o", str(output), "--json"])

    assert code == cli.EXIT_JOB_ERRORS
    summary = json.loads(capsys.readouterr().out)
    assert summary["status"] == "partial"
    assert summary["load_failures"][0]["path"] == str(broken_image)
    assert output.exists()


def test_save_settings_persists_options(sample_images, tmp_path: Path) -> None:
    settings_path = tmp_path / "settings.json"
    code = main(
        [
            str(sample_images["png"]),
            "-s",
            "640x480",
            "--mode",
            "pad",
            "--settings",
            str(settings_path),
            "--save-settings",
            "-o",
            str(tmp_path / "x.zip"),
            "--no-progress",
        ]
    )
    assert code == 0
    saved = BatchSettingsStore(settings_path).load()
    assert saved["mode"] == "pad"
    assert saved["selected_sizes"] == ["custom-640x480"]
    assert saved["custom_sizes"] == ["640x480"]


def test_parse_size_modes_matches_selected_sizes() -> None:
    sizes = [make_size(500, 500), make_size(800, 400, "banner")]
    modes = _parse_size_modes(["500x500=stretch", "banner=cover"], sizes)
    assert modes == {"custom-500x500": "stretch", "banner": "cover"}

    with pytest.raises(InvalidOption):
        _parse_size_modes(["stretch"], sizes)
    with pytest.raises(InvalidOption):
        _parse_size_modes(["640x480=cover"], sizes)


def test_size_mode_flag_overrides_fit_per_size(sample_images, tmp_path: Path) -> None:
    output = tmp_path / "out.zip"
    code = main(
        [
            str(sample_images["wide"]),
            "-s",
            "500x500",
            "-s",
            "800x800",
            "--size-mode",
            "500x500=stretch",
            "--folders",
            "flat",
            "-o",
            str(output),
            "--no-progress",
        ]
    )
    assert code == 0

    with zipfile.ZipFile(output) as zf:
        with Image.open(io.BytesIO(zf.read("B_500x500.png"))) as stretched:
            assert stretched.convert("RGBA").getpixel((0, 0)) == (0, 0, 255, 255)
        with Image.open(io.BytesIO(zf.read("B_800x800.png"))) as contained:
            assert contained.convert("RGBA").getpixel((0, 0))[3] == 0


def test_size_mode_for_unselected_size_is_validation_error(sample_images, tmp_path: Path) -> None:
    code = main([str(sample_images["png"]), "-s", "10x10", "--size-mode", "20x20=cover", "-o", str(tmp_path / "x.zip")])
    assert code == cli.EXIT_VALIDATION
