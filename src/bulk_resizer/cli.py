"""bulk-resizer コマンドラインツール。

画像ファイル（またはフォルダ）と出力サイズを指定して、
リサイズ済み画像をまとめたZIPを1つ作る。
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from loguru import logger
from tqdm import tqdm

from . import __version__
from .archive_builder import DuplicatePolicy, FolderStrategy, save_archive
from .errors import (
    BatchCancelled,
    BulkResizerError,
    InvalidOption,
    NoSizes,
    PackagingError,
    ValidationError,
    describe_error,
)
from .pipeline import BatchOptions, BatchResult, resize_batch
from .progress_tracker import ProgressReporter, ProgressSnapshot
from .resample_engine import FitMode
from .runtime_logging import configure_logging, create_run_log_artifacts, write_run_summary
from .scheduler import ConcurrencyTier
from .settings_store import BatchSettingsStore
from .size_catalog import SizeCatalog, SizeSpec, parse_size_text
from .source_registry import SourceRegistry, discover_image_paths

EXIT_OK = 0
EXIT_JOB_ERRORS = 1
EXIT_VALIDATION = 2
EXIT_PACKAGING = 3
EXIT_CANCELLED = 130


def _build_arg_parser(defaults: Optional[Mapping[str, Any]] = None) -> argparse.ArgumentParser:
    """Create argument parser for CLI use."""
    d = dict(defaults or {})
    p = argparse.ArgumentParser(
        prog="bulk-resizer",
        description="画像を複数サイズへ一括リサイズし、DPI情報付きでZIPにまとめる",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("inputs", nargs="*", help="入力画像ファイルまたはフォルダー")
    p.add_argument("-o", "--output", help="出力ZIPのパス（省略時は入力名から決める）")
    p.add_argument(
        "-s", "--size", action="append", default=[], metavar="WxH", help="出力サイズ (重ね掛け可)"
    )
    p.add_argument(
        "-p", "--preset", action="append", default=[], metavar="ID", help="プリセットID (重ね掛け可)"
    )
    p.add_argument("--all-presets", action="store_true", help="組み込みプリセットをすべて使う")
    p.add_argument("--list-presets", action="store_true", help="プリセット一覧を表示して終了")
    p.add_argument(
        "--mode", choices=[m.value for m in FitMode], default=d.get("mode", "contain"), help="フィットモード"
    )
    p.add_argument(
        "--size-mode",
        action="append",
        default=[],
        metavar="SIZE=MODE",
        help="サイズごとのフィットモード (SIZE はプリセットIDか WxH、重ね掛け可)",
    )
    p.add_argument("--background", default=d.get("background", "#ffffff"), help="余白・透過部分の色")
    p.add_argument(
        "--no-transparency",
        dest="keep_transparency",
        action="store_false",
        default=d.get("keep_transparency", True),
        help="透過を残さず背景色で塗る",
    )
    dpi_group = p.add_mutually_exclusive_group()
    dpi_group.add_argument("--dpi", type=int, default=d.get("dpi", 300), help="書き込むDPI")
    dpi_group.add_argument("--no-dpi", action="store_true", help="DPI情報を書き込まない")
    worker_group = p.add_mutually_exclusive_group()
    worker_group.add_argument(
        "--tier",
        choices=[t.value for t in ConcurrencyTier],
        default=None,
        help="並列ティア (safe=1 / balanced=3 / turbo=6)",
    )
    worker_group.add_argument("--workers", type=int, default=None, help="ワーカー数を直接指定")
    p.add_argument(
        "--pattern",
        default=d.get("filename_pattern", "{basename}_{width}x{height}"),
        help="ファイル名パターン ({basename} {width} {height} {profile})",
    )
    p.add_argument(
        "--folders",
        choices=[s.value for s in FolderStrategy],
        default=d.get("folder_strategy", "bySize"),
        help="ZIP内のフォルダ構成",
    )
    p.add_argument("--profile", default=d.get("profile", ""), help="{profile} に入る文字列")
    p.add_argument(
        "--convert-jpg-to-png",
        action="store_true",
        default=d.get("convert_jpg_to_png", False),
        help="JPEG入力もPNGで出力する",
    )
    p.add_argument("-q", "--quality", type=int, default=d.get("quality", 92), help="JPEG品質 (1-100)")
    p.add_argument("--sharpen", action="store_true", default=d.get("sharpen", False), help="縮小後にシャープ化")
    p.add_argument(
        "--on-duplicate",
        choices=[policy.value for policy in DuplicatePolicy],
        default=d.get("duplicate_policy", "reject"),
        help="ZIP内パスが重複したときの扱い",
    )
    p.add_argument("--retries", type=int, default=d.get("retries", 0), help="失敗ジョブの再試行回数")
    p.add_argument(
        "--recursive",
        dest="recursive",
        action="store_true",
        default=True,
        help="フォルダー入力時にサブフォルダーも探索",
    )
    p.add_argument("--no-recursive", dest="recursive", action="store_false", help="サブフォルダーを探索しない")
    p.add_argument("--settings", type=Path, default=None, help="設定ファイルのパス")
    p.add_argument("--save-settings", action="store_true", help="今回のオプションを既定値として保存")
    p.add_argument("--no-progress", action="store_true", help="進捗バーを表示しない")
    p.add_argument("--json", action="store_true", help="結果をJSONで標準出力へ出す")
    p.add_argument("--verbose", "-v", action="count", default=0, help="詳細ログを増やす (重ね掛け可)")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def _console_level(verbose: int, json_mode: bool) -> str:
    if verbose >= 2:
        return "TRACE"
    if verbose == 1:
        return "DEBUG"
    # JSON出力時は標準エラーの情報ログを抑える
    return "WARNING" if json_mode else "INFO"


def _options_from_args(
    args: argparse.Namespace, settings: Mapping[str, Any], sizes: Sequence[SizeSpec] = ()
) -> BatchOptions:
    if args.workers is not None:
        concurrency: Any = args.workers
    elif args.tier is not None:
        concurrency = args.tier
    else:
        concurrency = settings.get("concurrency", "balanced")
    return BatchOptions(
        mode=args.mode,
        background=args.background,
        keep_transparency=args.keep_transparency,
        dpi=None if args.no_dpi else args.dpi,
        concurrency=concurrency,
        filename_pattern=args.pattern,
        folder_strategy=args.folders,
        profile=args.profile,
        convert_jpg_to_png=args.convert_jpg_to_png,
        quality=args.quality,
        sharpen=args.sharpen,
        duplicate_policy=args.on_duplicate,
        retries=args.retries,
        size_modes=_parse_size_modes(args.size_mode, sizes),
    ).normalized()


def _parse_size_modes(values: Sequence[str], sizes: Sequence[SizeSpec]) -> dict[str, str]:
    """``SIZE=MODE`` の指定を選択中サイズのID → モードに変換する。"""
    modes: dict[str, str] = {}
    for value in values:
        token, sep, mode = str(value).rpartition("=")
        token = token.strip()
        if not sep or not token or not mode.strip():
            raise InvalidOption(f"--size-mode は SIZE=MODE 形式で指定してください: {value!r}")
        matched = [spec for spec in sizes if spec.id == token]
        if not matched:
            width, height = parse_size_text(token)
            matched = [spec for spec in sizes if (spec.width, spec.height) == (width, height)]
        if not matched:
            raise InvalidOption(f"選択されていないサイズです: {token}")
        modes[matched[0].id] = mode.strip()
    return modes


def _resolve_sizes(args: argparse.Namespace, catalog: SizeCatalog, settings: Mapping[str, Any]) -> list[SizeSpec]:
    """CLI指定（なければ保存済み設定）から出力サイズを決める。ID重複は除く。"""
    tokens: list[str] = []
    if args.all_presets:
        tokens.extend(spec.id for spec in catalog.presets())
    tokens.extend(args.preset)
    tokens.extend(args.size)
    if not tokens:
        tokens.extend(settings.get("selected_sizes") or [])
    if not tokens:
        raise NoSizes()

    selected: dict[str, SizeSpec] = {}
    for token in tokens:
        spec = catalog.resolve(str(token))
        selected.setdefault(spec.id, spec)
    return list(selected.values())


def _format_preset_table(catalog: SizeCatalog) -> str:
    lines = []
    for spec in catalog.all():
        note = f"  ({spec.note})" if spec.note else ""
        lines.append(f"{spec.id:<28} {spec.dimensions_text:>10}  {spec.label or ''}{note}")
    return "\n".join(lines)


def _build_cli_summary(
    *,
    status: str,
    inputs: Sequence[Path],
    output: Optional[Path],
    options: Optional[BatchOptions],
    sizes: Sequence[SizeSpec],
    result: Optional[BatchResult],
    load_failures: Sequence[tuple[Path, BaseException]],
    elapsed_seconds: float,
    message: str,
    error_category: Optional[str] = None,
) -> dict[str, Any]:
    """JSON出力 / 実行summary 用の辞書を組み立てる。"""
    return {
        "status": status,
        "inputs": [str(path) for path in inputs],
        "output": str(output) if output else "",
        "options": options.to_settings() if options else {},
        "sizes": [spec.to_dict() for spec in sizes],
        "summary": result.summary.to_dict() if result else {},
        "jobs": [job.to_dict() for job in result.job_results] if result else [],
        "load_failures": [{"path": str(path), "error": str(error)} for path, error in load_failures],
        "elapsed_seconds": round(elapsed_seconds, 3),
        "message": message,
        "error_category": error_category,
    }


class _ProgressBar:
    """ProgressReporter の更新を tqdm に流す。"""

    def __init__(self, total: int, disable: bool) -> None:
        self._bar = tqdm(total=total, desc="リサイズ中", unit="job", disable=disable)
        self._shown = 0

    def update(self, snapshot: ProgressSnapshot) -> None:
        delta = snapshot.processed - self._shown
        if delta > 0:
            self._bar.update(delta)
            self._shown = snapshot.processed
        self._bar.set_postfix(ok=snapshot.completed, ng=snapshot.errored, refresh=False)

    def close(self) -> None:
        self._bar.close()


def _exit_code_for(error: BaseException) -> int:
    if isinstance(error, BatchCancelled):
        return EXIT_CANCELLED
    if isinstance(error, ValidationError):
        return EXIT_VALIDATION
    if isinstance(error, PackagingError):
        return EXIT_PACKAGING
    return EXIT_JOB_ERRORS


def main(argv: Optional[Sequence[str]] = None) -> int:  # noqa: C901
    """CLI を実行して終了コードを返す。"""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--settings", type=Path, default=None)
    pre_args, _ = pre.parse_known_args(argv)
    store = BatchSettingsStore(pre_args.settings)
    settings = store.load()

    parser = _build_arg_parser(settings)
    args = parser.parse_args(argv)

    catalog = SizeCatalog.from_settings(settings)
    if args.list_presets:
        print(_format_preset_table(catalog))
        return EXIT_OK

    artifacts = create_run_log_artifacts()
    configure_logging(console_level=_console_level(args.verbose, args.json), run_log_path=artifacts.run_log_path)
    logger.debug(f"引数: {args}")

    started = time.perf_counter()
    inputs = [Path(item) for item in args.inputs]
    options: Optional[BatchOptions] = None
    sizes: list[SizeSpec] = []
    result: Optional[BatchResult] = None
    output_path: Optional[Path] = None
    load_failures: list[tuple[Path, BaseException]] = []
    cancel_event = threading.Event()

    def _handle_sigint(signum, frame):  # noqa: ARG001
        logger.warning("中断シグナルを受信しました。未着手のジョブを破棄します...")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _handle_sigint)
    registry = SourceRegistry()
    try:
        sizes = _resolve_sizes(args, catalog, settings)
        options = _options_from_args(args, settings, sizes)

        image_paths = discover_image_paths(inputs, recursive=args.recursive)
        logger.info(f"入力画像: {len(image_paths)} 件 / 出力サイズ: {len(sizes)} 件")
        sources, failures = registry.add_files(image_paths)
        load_failures.extend(failures)

        reporter = ProgressReporter(total=len(sources) * len(sizes))
        bar = _ProgressBar(reporter.snapshot().total, disable=args.no_progress or args.json)
        reporter.register_callback("on_update", bar.update)
        try:
            result = resize_batch(sources, sizes, options, listeners=[reporter], cancel_event=cancel_event)
        except BatchCancelled:
            reporter.cancel()
            raise
        finally:
            bar.close()

        output_path = Path(args.output) if args.output else Path.cwd() / result.suggested_name
        save_archive(result.archive_bytes, output_path)
        logger.info(f"ZIPを保存しました: {output_path}")
        logger.info(reporter.status_text())

        if args.save_settings:
            payload = dict(settings)
            payload.update(options.to_settings())
            payload["selected_sizes"] = [spec.id for spec in sizes]
            payload["custom_sizes"] = catalog.to_settings()
            store.save(payload)
            logger.info(f"設定を保存しました: {store.settings_path}")
    except BulkResizerError as e:
        code = _exit_code_for(e)
        logger.error(describe_error(e))
        summary = _build_cli_summary(
            status="cancelled" if code == EXIT_CANCELLED else "error",
            inputs=inputs,
            output=output_path,
            options=options,
            sizes=sizes,
            result=result,
            load_failures=load_failures,
            elapsed_seconds=time.perf_counter() - started,
            message=describe_error(e),
            error_category=e.category,
        )
        _finish(args, artifacts.summary_path, summary)
        return code
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        registry.clear()

    failed_jobs = len(result.failed)
    has_errors = failed_jobs > 0 or bool(load_failures)
    if has_errors:
        message = f"{failed_jobs} 件のジョブと {len(load_failures)} 件の画像読み込みが失敗しました"
        logger.warning(message)
    else:
        message = "すべての画像を処理しました"
        logger.success(message)

    summary = _build_cli_summary(
        status="partial" if has_errors else "success",
        inputs=inputs,
        output=output_path,
        options=options,
        sizes=sizes,
        result=result,
        load_failures=load_failures,
        elapsed_seconds=time.perf_counter() - started,
        message=message,
    )
    _finish(args, artifacts.summary_path, summary)
    return EXIT_JOB_ERRORS if has_errors else EXIT_OK


def _finish(args: argparse.Namespace, summary_path: Path, summary: dict[str, Any]) -> None:
    try:
        write_run_summary(summary_path, summary)
    except OSError as e:
        logger.warning(f"実行summaryを保存できません: {summary_path} ({e})")
    if args.json:
        print(json.dumps(summary, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    sys.exit(main())
