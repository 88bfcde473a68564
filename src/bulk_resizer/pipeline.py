"""一括リサイズ処理の入口。

入力画像・出力サイズ・オプションを受け取り、ジョブ展開から
リサイズ、エンコード、DPI書き込み、ZIP作成までを通しで実行する。
呼び出し側の状態は変更せず、結果は ``BatchResult`` として返す。
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import threading
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from loguru import logger

from .archive_builder import (
    DEFAULT_FILENAME_PATTERN,
    ArchiveBuilder,
    DuplicatePolicy,
    FolderStrategy,
    suggest_archive_name,
)
from .errors import BatchCancelled, DuplicatePath, InvalidOption, error_category
from .image_encode_pipeline import (
    DEFAULT_JPEG_QUALITY,
    encode_image,
    resolve_output_format,
)
from .job_planner import Job, JobStatus, plan_jobs
from .metadata_codec import tag_resolution_with_outcome
from .resample_engine import FitMode, parse_color, resample
from .scheduler import ConcurrencyTier, JobListener, JobScheduler, resolve_worker_count
from .size_catalog import SizeSpec
from .source_registry import Source

DEFAULT_DPI = 300
MAX_DPI = 65535


def _is_int_in_range(value: Any, minimum: int, maximum: Optional[int]) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return value >= minimum and (maximum is None or value <= maximum)


@dataclass(frozen=True)
class BatchOptions:
    """1回の一括処理に適用するオプション。"""

    mode: Union[FitMode, str] = FitMode.CONTAIN
    background: str = "#ffffff"
    keep_transparency: bool = True
    dpi: Optional[int] = DEFAULT_DPI
    concurrency: Union[ConcurrencyTier, str, int] = ConcurrencyTier.BALANCED
    filename_pattern: str = DEFAULT_FILENAME_PATTERN
    folder_strategy: Union[FolderStrategy, str] = FolderStrategy.BY_SIZE
    profile: str = ""
    convert_jpg_to_png: bool = False
    quality: int = DEFAULT_JPEG_QUALITY
    sharpen: bool = False
    duplicate_policy: Union[DuplicatePolicy, str] = DuplicatePolicy.REJECT
    retries: int = 0
    # サイズIDごとのフィットモード上書き
    size_modes: Mapping[str, Union[FitMode, str]] = field(default_factory=dict)

    def normalized(self) -> "BatchOptions":
        """値を検証し、列挙型へ正規化したコピーを返す。不正な値は InvalidOption。"""
        try:
            mode = FitMode.coerce(self.mode)
            size_modes = {size_id: FitMode.coerce(value) for size_id, value in self.size_modes.items()}
        except ValueError as e:
            raise InvalidOption(str(e)) from e
        try:
            parse_color(self.background)
        except ValueError as e:
            raise InvalidOption(f"背景色を解釈できません: {self.background!r}") from e
        if self.dpi is not None and not _is_int_in_range(self.dpi, 1, MAX_DPI):
            raise InvalidOption(f"DPIは1-{MAX_DPI}の整数で指定してください: {self.dpi!r}")
        try:
            resolve_worker_count(self.concurrency, 1)
            folder_strategy = FolderStrategy.coerce(self.folder_strategy)
            duplicate_policy = DuplicatePolicy.coerce(self.duplicate_policy)
        except ValueError as e:
            raise InvalidOption(str(e)) from e
        if not str(self.filename_pattern or "").strip():
            raise InvalidOption("ファイル名パターンが空です")
        if not _is_int_in_range(self.quality, 1, 100):
            raise InvalidOption(f"品質は1-100の整数で指定してください: {self.quality!r}")
        if not _is_int_in_range(self.retries, 0, None):
            raise InvalidOption(f"リトライ回数は0以上の整数で指定してください: {self.retries!r}")

        concurrency = self.concurrency
        if isinstance(concurrency, str):
            concurrency = ConcurrencyTier(concurrency.strip().lower())
        return replace(
            self,
            mode=mode,
            size_modes=size_modes,
            concurrency=concurrency,
            folder_strategy=folder_strategy,
            duplicate_policy=duplicate_policy,
        )

    def mode_for(self, size_id: str) -> FitMode:
        return FitMode.coerce(self.size_modes.get(size_id, self.mode))

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "BatchOptions":
        """保存済み設定から生成する。未知のキーは無視する。"""
        defaults = cls()
        concurrency = settings.get("concurrency", defaults.concurrency)
        if isinstance(concurrency, str) and concurrency.strip().isdigit():
            concurrency = int(concurrency)
        options = cls(
            mode=settings.get("mode", defaults.mode),
            background=settings.get("background", defaults.background),
            keep_transparency=bool(settings.get("keep_transparency", defaults.keep_transparency)),
            dpi=settings.get("dpi", defaults.dpi),
            concurrency=concurrency,
            filename_pattern=settings.get("filename_pattern", defaults.filename_pattern),
            folder_strategy=settings.get("folder_strategy", defaults.folder_strategy),
            profile=settings.get("profile", defaults.profile) or "",
            convert_jpg_to_png=bool(settings.get("convert_jpg_to_png", defaults.convert_jpg_to_png)),
            quality=settings.get("quality", defaults.quality),
            sharpen=bool(settings.get("sharpen", defaults.sharpen)),
            duplicate_policy=settings.get("duplicate_policy", defaults.duplicate_policy),
            retries=settings.get("retries", defaults.retries),
        )
        return options.normalized()

    def to_settings(self) -> dict[str, Any]:
        opts = self.normalized()
        concurrency = opts.concurrency
        return {
            "mode": FitMode.coerce(opts.mode).value,
            "background": opts.background,
            "keep_transparency": opts.keep_transparency,
            "dpi": opts.dpi,
            "concurrency": concurrency.value if isinstance(concurrency, ConcurrencyTier) else concurrency,
            "filename_pattern": opts.filename_pattern,
            "folder_strategy": FolderStrategy.coerce(opts.folder_strategy).value,
            "profile": opts.profile,
            "convert_jpg_to_png": opts.convert_jpg_to_png,
            "quality": opts.quality,
            "sharpen": opts.sharpen,
            "duplicate_policy": DuplicatePolicy.coerce(opts.duplicate_policy).value,
            "retries": opts.retries,
        }


@dataclass(frozen=True)
class JobResult:
    job_id: str
    source_name: str
    size_id: str
    width: int
    height: int
    status: str
    path: Optional[str] = None
    byte_size: int = 0
    dpi_tagged: bool = False
    tag_outcome: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "source_name": self.source_name,
            "size_id": self.size_id,
            "width": self.width,
            "height": self.height,
            "status": self.status,
            "path": self.path,
            "byte_size": self.byte_size,
            "dpi_tagged": self.dpi_tagged,
            "tag_outcome": self.tag_outcome,
            "error": self.error,
            "error_category": self.error_category,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class BatchSummary:
    total: int
    done: int
    error: int
    worker_count: int = 1
    archive_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "done": self.done,
            "error": self.error,
            "worker_count": self.worker_count,
            "archive_bytes": self.archive_bytes,
        }


@dataclass(frozen=True)
class BatchResult:
    archive_bytes: bytes
    job_results: list[JobResult]
    summary: BatchSummary
    suggested_name: str = ""

    @property
    def failed(self) -> list[JobResult]:
        return [result for result in self.job_results if result.status == JobStatus.ERROR.value]


def make_job_processor(options: BatchOptions):
    """1ジョブ分のリサイズ → エンコード → DPI書き込みを行う関数を返す。"""
    def process_job(job: Job) -> bytes:
        canvas = resample(
            job.source.image,
            job.size.width,
            job.size.height,
            mode=options.mode_for(job.size_id),
            background=options.background,
            keep_transparency=options.keep_transparency,
            sharpen=options.sharpen,
        )
        output_format = job.output_format or resolve_output_format(
            job.source.source_format, options.convert_jpg_to_png
        ).value
        data = encode_image(canvas, output_format, quality=options.quality, background=options.background)
        if options.dpi is None:
            return data

        tagged, outcome = tag_resolution_with_outcome(data, output_format, options.dpi)
        job.tag_outcome = outcome.value
        if not outcome.tagged:
            logger.warning(f"DPIを書き込めませんでした ({outcome.value}): {job.describe()}")
        return tagged

    return process_job


def resize_batch(
    sources: Sequence[Source],
    sizes: Sequence[SizeSpec],
    options: Optional[BatchOptions] = None,
    listeners: Iterable[JobListener] = (),
    cancel_event: Optional[threading.Event] = None,
) -> BatchResult:
    """全ジョブを処理してZIPを作る。

    Raises:
        ValidationError: 入力が不正（ジョブは1件も実行しない）
        PackagingError: ZIP内パスの重複や書き込み失敗
        BatchCancelled: 処理中にキャンセルされた
    """
    opts = (options or BatchOptions()).normalized()
    jobs = plan_jobs(sources, sizes)
    worker_count = resolve_worker_count(opts.concurrency, len(jobs))

    for job in jobs:
        job.output_format = resolve_output_format(job.source.source_format, opts.convert_jpg_to_png).value

    builder = ArchiveBuilder(
        opts.filename_pattern,
        opts.folder_strategy,
        profile=opts.profile,
        duplicate_policy=opts.duplicate_policy,
    )
    # 重複パスは全ジョブ終了後ではなく実行前に DuplicatePath として出す（意図的な前倒し）
    _check_entry_paths(jobs, builder)

    logger.info(
        f"一括処理開始: 画像 {len(sources)} 枚 × サイズ {len({job.size_id for job in jobs})} 件 = {len(jobs)} ジョブ"
    )
    scheduler = JobScheduler(
        make_job_processor(opts),
        worker_count,
        retries=opts.retries,
        listeners=listeners,
    )
    outcome = scheduler.run(jobs, cancel_event=cancel_event)
    if outcome.cancelled:
        raise BatchCancelled()

    archive = builder.build(outcome.jobs, outcome.outputs)
    results = [_build_job_result(job, builder, opts) for job in outcome.jobs]
    summary = BatchSummary(
        total=len(jobs),
        done=len(outcome.done_jobs),
        error=len(outcome.error_jobs),
        worker_count=worker_count,
        archive_bytes=len(archive),
    )
    basenames = sorted({job.source.basename for job in jobs})
    return BatchResult(
        archive_bytes=archive,
        job_results=results,
        summary=summary,
        suggested_name=suggest_archive_name(basenames, opts.dpi),
    )


def _check_entry_paths(jobs: Sequence[Job], builder: ArchiveBuilder) -> None:
    """実行前にZIP内パスの衝突を検出する。"""
    if builder.duplicate_policy is not DuplicatePolicy.REJECT:
        return
    owners: dict[str, list[str]] = {}
    for job in jobs:
        owners.setdefault(builder.entry_path_for(job), []).append(job.id)
    for path, job_ids in owners.items():
        if len(job_ids) > 1:
            raise DuplicatePath(path, tuple(job_ids))


def _build_job_result(job: Job, builder: ArchiveBuilder, options: BatchOptions) -> JobResult:
    done = job.status is JobStatus.DONE
    return JobResult(
        job_id=job.id,
        source_name=job.source.name,
        size_id=job.size_id,
        width=job.size.width,
        height=job.size.height,
        status=job.status.value,
        path=builder.entry_path_for(job) if done else None,
        byte_size=len(job.output_bytes or b"") if done else 0,
        dpi_tagged=done and options.dpi is not None and job.tag_outcome in ("inserted", "updated"),
        tag_outcome=job.tag_outcome,
        error=str(job.error) if job.error else None,
        error_category=error_category(job.error),
        attempts=job.attempts,
    )
