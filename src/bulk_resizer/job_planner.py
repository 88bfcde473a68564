"""入力画像 × 出力サイズのジョブ展開。"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from .errors import JobError, NoSizes, NoSources, ValidationError
from .size_catalog import SizeSpec, validate_dimensions
from .source_registry import Source


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.DONE, JobStatus.ERROR},
    JobStatus.DONE: set(),
    JobStatus.ERROR: set(),
}


class InvalidTransition(RuntimeError):
    pass


def _escape_id_part(value: str) -> str:
    return value.replace("%", "%25").replace("_", "%5F")


def make_job_id(source_id: str, size_id: str) -> str:
    """ソースIDとサイズIDからジョブIDを作る。各部の ``_`` はエスケープするので区切りの ``__`` と衝突しない。"""
    return f"{_escape_id_part(source_id)}__{_escape_id_part(size_id)}"


@dataclass
class Job:
    """1枚の画像を1サイズで出力する単位。状態は前進のみ。"""

    source: Source
    size: SizeSpec
    status: JobStatus = JobStatus.PENDING
    output_bytes: Optional[bytes] = None
    error: Optional[JobError] = None
    attempts: int = 0
    output_format: Optional[str] = None
    tag_outcome: Optional[str] = None

    @property
    def id(self) -> str:
        return make_job_id(self.source.id, self.size.id)

    @property
    def source_id(self) -> str:
        return self.source.id

    @property
    def size_id(self) -> str:
        return self.size.id

    def advance(self, status: JobStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(f"{self.id}: {self.status.value} -> {status.value} は許可されていません")
        self.status = status

    def mark_processing(self) -> None:
        self.advance(JobStatus.PROCESSING)

    def mark_done(self, output_bytes: bytes) -> None:
        self.advance(JobStatus.DONE)
        self.output_bytes = output_bytes

    def mark_error(self, error: JobError) -> None:
        self.advance(JobStatus.ERROR)
        self.error = error

    def describe(self) -> str:
        return f"{self.source.name} @ {self.size.dimensions_text}"


def plan_jobs(sources: Sequence[Source], sizes: Sequence[SizeSpec]) -> list[Job]:
    """ソース優先順にジョブを展開する。N件×M件で必ずN×M個。"""
    if not sources:
        raise NoSources()
    if not sizes:
        raise NoSizes()

    unique_sizes: list[SizeSpec] = []
    seen_sizes: set[str] = set()
    for size in sizes:
        validate_dimensions(size.width, size.height)
        if size.id in seen_sizes:
            continue
        seen_sizes.add(size.id)
        unique_sizes.append(size)

    seen_sources: set[str] = set()
    for source in sources:
        if source.id in seen_sources:
            raise ValidationError(f"ソースIDが重複しています: {source.id}")
        seen_sources.add(source.id)

    jobs = [Job(source=source, size=size) for source in sources for size in unique_sizes]
    seen_jobs: set[str] = set()
    for job in jobs:
        if job.id in seen_jobs:
            raise ValidationError(f"ジョブIDが重複しています: {job.id}")
        seen_jobs.add(job.id)
    return jobs
