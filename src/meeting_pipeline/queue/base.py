"""
Очередь стадии (Stage Queue): общий контракт.

Семантика (одинаковая для redis и inline бэкендов):
- enqueue идемпотентен по id задачи: при живой waiting/active/delayed вернётся она же
- claim выдаёт задачу с наименьшим (priority, порядок постановки), не больше
  concurrency активных задач на стадию, attempts += 1, новый lease-токен
- complete/fail принимаются только от владельца текущего lease-токена
- fail: attempts < max_attempts -> delayed (экспоненциальный backoff) -> waiting,
  иначе failed (терминально) + событие наверх
- завис воркер (нет heartbeat) -> задача возвращается в waiting (это ретрай)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.common.metrics import QUEUE_TASKS_TOTAL
from meeting_pipeline.common.time import epoch_s
from meeting_pipeline.domain.enums import StageEventKind, TaskState
from meeting_pipeline.domain.stages import StageSpec

from .events import EventBus, StageEvent
from .tasks import CancelResult, QueueStats, Task

log = get_project_logger()

STALLED_REASON = "Job stalled: worker heartbeat lost"
STALLED_LIMIT_REASON = "Job stalled more than allowable limit"


@dataclass
class EnqueueResult:
    task: Task
    created: bool


@dataclass
class FailOutcome:
    task_id: str
    state: TaskState | None
    attempts: int
    delay_ms: int = 0
    cancelled: bool = False

    @property
    def terminal(self) -> bool:
        return self.state == TaskState.failed


@dataclass
class RetryDecision:
    state: TaskState
    delay_ms: int
    available_at: float | None


class StageQueue(ABC):
    """
    Очередь одной стадии пайплайна.

    Бэкенды: RedisStageQueue (прод), InMemoryStageQueue (QUEUE_MODE=inline, тесты).
    """

    def __init__(
        self,
        spec: StageSpec,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], float] = epoch_s,
        stall_timeout_sec: float | None = None,
    ) -> None:
        self.spec = spec
        self.stage = spec.name
        self.bus = bus
        self.clock = clock
        if stall_timeout_sec is None:
            stall_timeout_sec = float(get_settings().stall_timeout_sec)
        self.stall_timeout_sec = float(stall_timeout_sec)

    # -------------------------------------------------------------------------
    # Контракт
    # -------------------------------------------------------------------------
    @abstractmethod
    def enqueue(self, task: Task) -> EnqueueResult:
        """Поставить задачу. Дубликат незавершённой задачи: no-op."""

    @abstractmethod
    def claim(self) -> Task | None:
        """Взять следующую waiting задачу (или None, если нечего/упёрлись в concurrency)."""

    @abstractmethod
    def complete(self, task_id: str, token: str, result: dict[str, Any] | None = None) -> bool:
        """active -> completed. False, если токен устарел или задача отменена."""

    @abstractmethod
    def fail(
        self, task_id: str, token: str, reason: str, *, retriable: bool = True
    ) -> FailOutcome | None:
        """active -> delayed/waiting (ретрай) или failed. None, если токен устарел."""

    @abstractmethod
    def heartbeat(self, task_id: str, token: str) -> bool:
        """Продлить аренду активной задачи."""

    @abstractmethod
    def update_progress(self, task_id: str, token: str, progress: int) -> int | None:
        """Прогресс 0..100, не убывает. Возвращает сохранённое значение."""

    @abstractmethod
    def is_cancel_requested(self, task_id: str, token: str) -> bool:
        """True, если задачу отменили или воркер потерял аренду."""

    @abstractmethod
    def ack_cancelled(self, task_id: str, token: str) -> bool:
        """Воркер подтвердил остановку отменённой задачи."""

    @abstractmethod
    def get_task(self, task_id: str) -> Task | None: ...

    @abstractmethod
    def get_stats(self) -> QueueStats: ...

    @abstractmethod
    def cancel(self, task_id: str) -> CancelResult:
        """waiting/delayed/terminal: удалить, active: пометить на кооперативную отмену."""

    @abstractmethod
    def promote_delayed(self, now: float | None = None) -> int:
        """Перевести созревшие delayed задачи в waiting."""

    @abstractmethod
    def requeue_stalled(self, now: float | None = None) -> int:
        """Вернуть в waiting активные задачи без heartbeat дольше stall_timeout."""

    @abstractmethod
    def clean(
        self, state: TaskState, *, keep_last: int | None = None, max_age_sec: float | None = None
    ) -> int:
        """Удалить старые completed/failed задачи (по количеству и по возрасту)."""

    # -------------------------------------------------------------------------
    # Общее для бэкендов
    # -------------------------------------------------------------------------
    @property
    def concurrency(self) -> int:
        return self.spec.concurrency

    def get_status(self, task_id: str) -> dict[str, Any] | None:
        task = self.get_task(task_id)
        if task is None:
            return None
        return task.public_status()

    def retry_decision(self, task: Task, *, retriable: bool, now: float) -> RetryDecision:
        """
        attempts < max_attempts -> backoff base*2^(attempts-1) (с потолком).
        Нулевая задержка -> сразу waiting.
        """
        if not retriable or task.attempts >= task.max_attempts:
            return RetryDecision(state=TaskState.failed, delay_ms=0, available_at=None)
        delay_ms = self.spec.backoff_ms(task.attempts)
        if delay_ms <= 0:
            return RetryDecision(state=TaskState.waiting, delay_ms=0, available_at=None)
        return RetryDecision(
            state=TaskState.delayed, delay_ms=delay_ms, available_at=now + delay_ms / 1000.0
        )

    def _stats_labels(self, result: str) -> None:
        QUEUE_TASKS_TOTAL.labels(
            service="stage-queue", queue=self.stage.value, result=result
        ).inc()

    def _on_enqueued(self, task: Task, created: bool) -> None:
        if created:
            self._stats_labels("enqueued")
            log.info(
                "task_enqueued",
                extra={
                    "payload": {
                        "stage": self.stage.value,
                        "task_id": task.id,
                        "priority": task.priority,
                        "max_attempts": task.max_attempts,
                    }
                },
            )
        else:
            self._stats_labels("deduplicated")
            log.info(
                "task_deduplicated",
                extra={
                    "payload": {
                        "stage": self.stage.value,
                        "task_id": task.id,
                        "state": task.state.value,
                    }
                },
            )

    def _on_completed(self, task: Task) -> None:
        self._stats_labels("success")
        log.info(
            "task_completed",
            extra={
                "payload": {
                    "stage": self.stage.value,
                    "task_id": task.id,
                    "attempts": task.attempts,
                }
            },
        )
        self._publish(
            StageEvent(
                kind=StageEventKind.completed,
                stage=self.stage,
                task_id=task.id,
                meeting_id=task.meeting_id,
                attempts=task.attempts,
                result=dict(task.result or {}),
            )
        )
        self.clean(TaskState.completed, keep_last=self.spec.keep_completed)

    def _on_failed(self, task: Task, outcome: FailOutcome) -> None:
        if outcome.terminal:
            self._stats_labels("failed")
            log.error(
                "task_failed",
                extra={
                    "payload": {
                        "stage": self.stage.value,
                        "task_id": task.id,
                        "attempts": task.attempts,
                        "max_attempts": task.max_attempts,
                        "reason": (task.failure_reason or "")[:250],
                    }
                },
            )
            self._publish(
                StageEvent(
                    kind=StageEventKind.failed,
                    stage=self.stage,
                    task_id=task.id,
                    meeting_id=task.meeting_id,
                    attempts=task.attempts,
                    failure_reason=task.failure_reason,
                )
            )
            self.clean(TaskState.failed, keep_last=self.spec.keep_failed)
            return

        self._stats_labels("retry")
        log.warning(
            "task_requeued",
            extra={
                "payload": {
                    "stage": self.stage.value,
                    "task_id": task.id,
                    "attempts": task.attempts,
                    "max_attempts": task.max_attempts,
                    "backoff_ms": outcome.delay_ms,
                    "reason": (task.failure_reason or "")[:250],
                }
            },
        )

    def _on_stalled(self, task: Task, terminal: bool) -> None:
        self._stats_labels("stalled")
        log.warning(
            "task_stalled",
            extra={
                "payload": {
                    "stage": self.stage.value,
                    "task_id": task.id,
                    "attempts": task.attempts,
                    "terminal": terminal,
                }
            },
        )
        if terminal:
            self._on_failed(
                task,
                FailOutcome(task_id=task.id, state=TaskState.failed, attempts=task.attempts),
            )

    def _publish(self, event: StageEvent) -> None:
        if self.bus is not None:
            self.bus.publish(event)
