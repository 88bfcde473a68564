"""ジョブキューを固定数のワーカースレッドで消化するスケジューラ。

- キューは1本のFIFO。取り出しはロック下で行い、同じジョブを2回処理しない。
- 1ジョブの失敗は兄弟ジョブや他ワーカーを止めない。
- 全ジョブが done / error になった時点で ``run`` が戻る。
- ``cancel`` は未着手ジョブを破棄する。処理中のジョブは最後まで走らせ、結果だけ捨てる。
  キャンセル状態は次の ``run`` 開始時に解除される。
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
import threading
from typing import Callable, Deque, Iterable, Optional, Sequence, Union

from loguru import logger

from .errors import ContextUnavailable, JobError
from .job_planner import Job, JobStatus


class ConcurrencyTier(str, Enum):
    SAFE = "safe"
    BALANCED = "balanced"
    TURBO = "turbo"

    @property
    def workers(self) -> int:
        return _TIER_WORKERS[self]


_TIER_WORKERS = {
    ConcurrencyTier.SAFE: 1,
    ConcurrencyTier.BALANCED: 3,
    ConcurrencyTier.TURBO: 6,
}


def resolve_worker_count(concurrency: Union[ConcurrencyTier, str, int], job_count: int) -> int:
    """ティア名または整数からワーカー数を決める。ジョブ数を超えない。"""
    if isinstance(concurrency, ConcurrencyTier):
        requested = concurrency.workers
    elif isinstance(concurrency, bool):
        raise ValueError(f"並列数の指定が不正です: {concurrency!r}")
    elif isinstance(concurrency, int):
        requested = concurrency
    else:
        try:
            requested = ConcurrencyTier(str(concurrency).strip().lower()).workers
        except ValueError:
            raise ValueError(f"未対応の並列ティアです: {concurrency!r}") from None
    if requested < 1:
        raise ValueError(f"並列数は1以上で指定してください: {requested}")
    return max(1, min(requested, job_count))


@dataclass(frozen=True)
class JobStatusEvent:
    sequence: int
    job_id: str
    status: JobStatus
    source_name: str
    width: int
    height: int
    message: str = ""
    error: Optional[JobError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


JobListener = Callable[[JobStatusEvent], None]
ProcessJob = Callable[[Job], bytes]


@dataclass
class SchedulerOutcome:
    jobs: list[Job]
    outputs: dict[str, bytes] = field(default_factory=dict)
    cancelled: bool = False
    peak_processing: int = 0

    @property
    def done_jobs(self) -> list[Job]:
        return [job for job in self.jobs if job.status is JobStatus.DONE]

    @property
    def error_jobs(self) -> list[Job]:
        return [job for job in self.jobs if job.status is JobStatus.ERROR]

    @property
    def all_terminal(self) -> bool:
        return all(job.status.is_terminal for job in self.jobs)


class JobScheduler:
    """固定数ワーカーでジョブを処理する。"""

    def __init__(
        self,
        process_job: ProcessJob,
        worker_count: int = 3,
        *,
        retries: int = 0,
        listeners: Iterable[JobListener] = (),
    ) -> None:
        if worker_count < 1:
            raise ValueError(f"ワーカー数は1以上で指定してください: {worker_count}")
        if retries < 0:
            raise ValueError(f"リトライ回数は0以上で指定してください: {retries}")
        self._process_job = process_job
        self._worker_count = worker_count
        self._retries = retries
        self._listeners: list[JobListener] = list(listeners)

        self._lock = threading.Lock()
        self._emit_lock = threading.Lock()
        self._output_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._queue: Deque[Job] = deque()
        self._outputs: dict[str, bytes] = {}
        self._sequence = 0
        self._processing = 0
        self._peak_processing = 0

    @property
    def worker_count(self) -> int:
        return self._worker_count

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def cancel(self) -> int:
        """未着手のジョブを破棄する。破棄した件数を返す。"""
        self._cancel_event.set()
        with self._lock:
            discarded = len(self._queue)
            self._queue.clear()
        if discarded:
            logger.info(f"キャンセル: 未着手のジョブ {discarded} 件を破棄しました")
        return discarded

    def run(self, jobs: Sequence[Job], cancel_event: Optional[threading.Event] = None) -> SchedulerOutcome:
        """全ジョブが終端状態になるまで処理する。"""
        job_list = list(jobs)
        seen: set[str] = set()
        for job in job_list:
            if job.id in seen:
                raise ValueError(f"ジョブIDが重複しています: {job.id}")
            if job.status is not JobStatus.PENDING:
                raise ValueError(f"未処理でないジョブは投入できません: {job.id} ({job.status.value})")
            seen.add(job.id)

        with self._lock:
            self._cancel_event.clear()
            self._queue = deque(job_list)
            self._processing = 0
            self._peak_processing = 0
        with self._output_lock:
            self._outputs = {}

        worker_count = max(1, min(self._worker_count, len(job_list)))
        logger.info(f"ジョブ開始: {len(job_list)} 件 / ワーカー {worker_count}")

        watcher: Optional[threading.Thread] = None
        stop_watching = threading.Event()
        if cancel_event is not None and cancel_event.is_set():
            self.cancel()
        elif cancel_event is not None:
            watcher = threading.Thread(
                target=self._watch_external_cancel,
                args=(cancel_event, stop_watching),
                name="bulk-resizer-cancel-watcher",
                daemon=True,
            )
            watcher.start()

        threads = [
            threading.Thread(target=self._worker_loop, name=f"bulk-resizer-worker-{index + 1}", daemon=True)
            for index in range(worker_count if job_list else 0)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stop_watching.set()
        if watcher is not None:
            watcher.join()

        with self._output_lock:
            outputs = dict(self._outputs)
        outcome = SchedulerOutcome(
            jobs=job_list,
            outputs=outputs,
            cancelled=self.cancelled,
            peak_processing=self._peak_processing,
        )
        logger.info(
            f"ジョブ終了: 成功 {len(outcome.done_jobs)} / 失敗 {len(outcome.error_jobs)} / 全 {len(job_list)}"
            + (" (キャンセル)" if outcome.cancelled else "")
        )
        return outcome

    def _watch_external_cancel(self, cancel_event: threading.Event, stop: threading.Event) -> None:
        while not stop.is_set():
            if cancel_event.wait(0.05):
                self.cancel()
                return

    def _pop(self) -> Optional[Job]:
        with self._lock:
            if self._cancel_event.is_set() or not self._queue:
                return None
            job = self._queue.popleft()
            job.mark_processing()
            self._processing += 1
            self._peak_processing = max(self._peak_processing, self._processing)
            return job

    def _worker_loop(self) -> None:
        while True:
            job = self._pop()
            if job is None:
                return
            self._emit(job, f"{job.describe()} を処理中")
            data, error = self._run_with_retries(job)

            with self._lock:
                self._processing -= 1
                if error is None:
                    job.mark_done(data)  # type: ignore[arg-type]
                else:
                    job.mark_error(error)

            if error is None:
                self._register_output(job.id, data)  # type: ignore[arg-type]
                self._emit(job, f"{job.describe()} 完了")
            else:
                logger.warning(f"ジョブ失敗: {job.describe()} - {error}")
                self._emit(job, f"{job.describe()} 失敗: {error}", error)

    def _run_with_retries(self, job: Job) -> tuple[Optional[bytes], Optional[JobError]]:
        last_error: Optional[JobError] = None
        for attempt in range(1, self._retries + 2):
            job.attempts = attempt
            try:
                return self._process_job(job), None
            except JobError as e:
                last_error = e
            except MemoryError as e:
                last_error = ContextUnavailable(f"メモリ不足: {e}")
                last_error.__cause__ = e
            except Exception as e:
                logger.debug(f"想定外の例外 ({job.id}): {type(e).__name__}: {e}")
                last_error = JobError(f"{type(e).__name__}: {e}")
                last_error.__cause__ = e

            if attempt > self._retries or not last_error.retryable or self._cancel_event.is_set():
                break
            logger.debug(f"リトライ {attempt}/{self._retries}: {job.id} - {last_error}")
        return None, last_error

    def _register_output(self, job_id: str, data: bytes) -> None:
        with self._output_lock:
            if self._cancel_event.is_set():
                logger.debug(f"キャンセル後に完了した結果を破棄: {job_id}")
                return
            self._outputs[job_id] = data

    def _emit(self, job: Job, message: str, error: Optional[JobError] = None) -> None:
        with self._emit_lock:
            self._sequence += 1
            event = JobStatusEvent(
                sequence=self._sequence,
                job_id=job.id,
                status=job.status,
                source_name=job.source.name,
                width=job.size.width,
                height=job.size.height,
                message=message,
                error=error,
            )
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception as e:
                    logger.warning(f"リスナーエラー ({job.id}): {e}")
