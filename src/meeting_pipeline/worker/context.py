"""
Контекст выполнения задачи стадии.

Передаётся обработчику стадии: прогресс, heartbeat аренды и checkpoint
(кооперативная отмена + дедлайн стадии).
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from meeting_pipeline.common.errors import StageTimeoutError, TaskCancelled
from meeting_pipeline.queue.base import StageQueue
from meeting_pipeline.queue.tasks import Task


class TaskContext:
    def __init__(
        self,
        queue: StageQueue,
        task: Task,
        *,
        timeout_sec: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue = queue
        self.task = task
        self.token = task.lease_token or ""
        self.clock = clock
        self.timeout_sec = float(timeout_sec)
        self.started_at = clock()
        self.deadline = self.started_at + self.timeout_sec
        self._abandoned = threading.Event()

    @property
    def remaining_sec(self) -> float:
        return max(0.0, self.deadline - self.clock())

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    def abandon(self) -> None:
        """Воркер перестал ждать обработчик (таймаут): поздний результат выбрасываем."""
        self._abandoned.set()

    def report_progress(self, pct: int) -> None:
        if self.abandoned:
            return
        self.queue.update_progress(self.task.id, self.token, pct)

    def heartbeat(self) -> bool:
        if self.abandoned:
            return False
        return self.queue.heartbeat(self.task.id, self.token)

    def checkpoint(self) -> None:
        if self.abandoned or self.clock() >= self.deadline:
            raise StageTimeoutError(
                f"Stage timed out after {self.timeout_sec:.0f}s",
                details={"task_id": self.task.id},
            )
        if self.queue.is_cancel_requested(self.task.id, self.token):
            raise TaskCancelled(details={"task_id": self.task.id})

    def cancel(self, reason: str) -> None:
        """Снять свою задачу: флаг отмены в очереди + TaskCancelled (воркер сделает ack)."""
        self.queue.cancel(self.task.id)
        raise TaskCancelled(reason, details={"task_id": self.task.id})
