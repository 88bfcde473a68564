"""
ジョブ状態イベントから全体の進捗を集計するモジュール
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import threading
from typing import Callable, Dict, List, Optional

from loguru import logger

from .job_planner import JobStatus
from .scheduler import JobStatusEvent


@dataclass(frozen=True)
class ProgressSnapshot:
    """ある時点の進捗"""

    total: int
    completed: int = 0
    errored: int = 0
    processing: int = 0
    message: str = ""
    cancelled: bool = False

    @property
    def processed(self) -> int:
        """終端状態に達したジョブ数"""
        return self.completed + self.errored

    @property
    def percentage(self) -> float:
        """全体の進捗率"""
        if self.total == 0:
            return 0.0
        return (self.processed / self.total) * 100

    @property
    def finished(self) -> bool:
        return self.total > 0 and self.processed == self.total

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "errored": self.errored,
            "processing": self.processing,
            "message": self.message,
            "cancelled": self.cancelled,
        }


class ProgressReporter:
    """進捗レポーター

    スケジューラのリスナーとして登録し、状態遷移イベントを受け取る。
    同じジョブの終端イベントを二重に数えないため、
    ``completed + errored`` が ``total`` を超えることはない。
    """

    def __init__(self, total: int, clock: Callable[[], datetime] = datetime.now):
        if total < 0:
            raise ValueError(f"total は0以上で指定してください: {total}")
        self._total = total
        self._clock = clock
        self._states: Dict[str, JobStatus] = {}
        self._completed = 0
        self._errored = 0
        self._processing = 0
        self._message = "待機中"
        self._cancelled = False
        self._finished = False
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.callbacks: Dict[str, List[Callable]] = {
            "on_update": [],
            "on_finished": [],
            "on_cancel": [],
        }
        self._lock = threading.Lock()

    def register_callback(self, event: str, callback: Callable):
        """コールバックを登録"""
        if event not in self.callbacks:
            raise ValueError(f"未対応のイベントです: {event}")
        self.callbacks[event].append(callback)

    def __call__(self, event: JobStatusEvent) -> None:
        self.handle(event)

    def handle(self, event: JobStatusEvent) -> None:
        """状態遷移イベントを反映"""
        finished_now = False
        with self._lock:
            previous = self._states.get(event.job_id)
            if previous is not None and previous.is_terminal:
                logger.debug(f"終端済みジョブのイベントを無視: {event.job_id} ({event.status.value})")
                return
            if event.is_terminal and self._completed + self._errored >= self._total:
                logger.warning(f"total を超える終端イベントを無視: {event.job_id}")
                return

            if self.start_time is None:
                self.start_time = self._clock()

            if event.status is JobStatus.PROCESSING:
                if previous is not JobStatus.PROCESSING:
                    self._processing += 1
            elif event.is_terminal:
                if previous is JobStatus.PROCESSING:
                    self._processing -= 1
                if event.status is JobStatus.DONE:
                    self._completed += 1
                else:
                    self._errored += 1

            self._states[event.job_id] = event.status
            self._message = event.message or self._message

            if not self._finished and self._total > 0 and self._completed + self._errored == self._total:
                self._finished = True
                finished_now = True
                self.end_time = self._clock()
                self._message = "すべてのジョブが完了しました"
            snapshot = self._snapshot_locked()

        self._trigger_callbacks("on_update", snapshot)
        if finished_now:
            self._trigger_callbacks("on_finished", snapshot)

    def cancel(self) -> None:
        """キャンセルを記録"""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._message = "キャンセルしました"
            self.end_time = self._clock()
            snapshot = self._snapshot_locked()
        self._trigger_callbacks("on_cancel", snapshot)

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot_locked()

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def elapsed_time(self) -> Optional[timedelta]:
        """経過時間"""
        if not self.start_time:
            return None
        end = self.end_time or self._clock()
        return end - self.start_time

    def status_text(self) -> str:
        """ステータステキストを取得"""
        snap = self.snapshot()
        if snap.processed == 0 and snap.processing == 0 and not snap.cancelled:
            return f"待機中 (0/{snap.total})"

        status_parts = [
            f"進捗: {snap.processed}/{snap.total} ({snap.percentage:.1f}%)",
            f"成功: {snap.completed}",
            f"失敗: {snap.errored}",
        ]
        elapsed = self.elapsed_time
        if elapsed:
            status_parts.append(f"経過: {self._format_timedelta(elapsed)}")
        if snap.cancelled:
            status_parts.append("キャンセル")
        return " | ".join(status_parts)

    def _snapshot_locked(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            total=self._total,
            completed=self._completed,
            errored=self._errored,
            processing=self._processing,
            message=self._message,
            cancelled=self._cancelled,
        )

    @staticmethod
    def _format_timedelta(td: timedelta) -> str:
        """timedelta を読みやすい形式に変換"""
        total_seconds = int(td.total_seconds())
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        seconds = total_seconds % 60

        if hours > 0:
            return f"{hours}時間{minutes}分"
        elif minutes > 0:
            return f"{minutes}分{seconds}秒"
        else:
            return f"{seconds}秒"

    def _trigger_callbacks(self, event: str, *args):
        """コールバックをトリガー"""
        for callback in self.callbacks.get(event, []):
            try:
                callback(*args)
            except Exception as e:
                logger.warning(f"コールバックエラー ({event}): {e}")
