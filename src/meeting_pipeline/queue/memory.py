"""
In-process бэкенд очереди стадии.

Используется при QUEUE_MODE=inline (локальный прогон без Redis) и в тестах.
Состояние живёт в памяти процесса, переживает только падение воркер-потока,
но не процесса. Семантика переходов та же, что у Redis-бэкенда.
"""

from __future__ import annotations

import copy
import itertools
import threading
from typing import Any

from meeting_pipeline.common.ids import new_lease_token
from meeting_pipeline.domain.enums import OPEN_TASK_STATES, TERMINAL_TASK_STATES, TaskState

from .base import (
    STALLED_LIMIT_REASON,
    STALLED_REASON,
    EnqueueResult,
    FailOutcome,
    StageQueue,
)
from .tasks import CancelResult, QueueStats, Task


class InMemoryStageQueue(StageQueue):
    def __init__(self, spec, **kwargs) -> None:
        super().__init__(spec, **kwargs)
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        # Порядок внутри одного priority (FIFO)
        self._order: dict[str, int] = {}
        self._seq = itertools.count(1)

    # -------------------------------------------------------------------------
    # helpers (вызываются под self._lock)
    # -------------------------------------------------------------------------
    def _owned(self, task_id: str, token: str) -> Task | None:
        task = self._tasks.get(task_id)
        if task is None or task.state != TaskState.active:
            return None
        if not token or task.lease_token != token:
            return None
        return task

    def _to_waiting(self, task: Task) -> None:
        task.state = TaskState.waiting
        task.available_at = None
        task.lease_token = None
        task.heartbeat_at = None
        self._order[task.id] = next(self._seq)

    def _remove(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)
        self._order.pop(task_id, None)

    @staticmethod
    def _snapshot(task: Task) -> Task:
        return copy.deepcopy(task)

    # -------------------------------------------------------------------------
    # Контракт
    # -------------------------------------------------------------------------
    def enqueue(self, task: Task) -> EnqueueResult:
        with self._lock:
            existing = self._tasks.get(task.id)
            if existing is not None and existing.state in OPEN_TASK_STATES:
                if existing.state == TaskState.active and existing.cancel_requested:
                    # Повторная постановка отменённой, но ещё работающей задачи
                    existing.cancel_requested = False
                    existing.payload = copy.deepcopy(task.payload)
                result = EnqueueResult(task=self._snapshot(existing), created=False)
            else:
                new = copy.deepcopy(task)
                new.state = TaskState.waiting
                new.attempts = 0
                new.progress = 0
                new.created_at = self.clock()
                new.processed_at = None
                new.available_at = None
                new.finished_at = None
                new.failure_reason = None
                new.result = None
                new.cancel_requested = False
                new.lease_token = None
                new.heartbeat_at = None
                self._tasks[new.id] = new
                self._order[new.id] = next(self._seq)
                result = EnqueueResult(task=self._snapshot(new), created=True)
        self._on_enqueued(result.task, result.created)
        return result

    def claim(self) -> Task | None:
        self.promote_delayed()
        with self._lock:
            active = sum(1 for t in self._tasks.values() if t.state == TaskState.active)
            if active >= self.concurrency:
                return None
            waiting = [t for t in self._tasks.values() if t.state == TaskState.waiting]
            if not waiting:
                return None
            task = min(waiting, key=lambda t: (t.priority, self._order.get(t.id, 0)))
            now = self.clock()
            task.state = TaskState.active
            task.attempts += 1
            task.processed_at = now
            task.heartbeat_at = now
            task.lease_token = new_lease_token()
            self._order.pop(task.id, None)
            return self._snapshot(task)

    def complete(self, task_id: str, token: str, result: dict[str, Any] | None = None) -> bool:
        with self._lock:
            task = self._owned(task_id, token)
            if task is None:
                return False
            if task.cancel_requested:
                self._remove(task_id)
                cancelled = True
            else:
                cancelled = False
                task.state = TaskState.completed
                task.progress = 100
                task.result = dict(result or {})
                task.finished_at = self.clock()
                task.lease_token = None
                task.heartbeat_at = None
                done = self._snapshot(task)
        if cancelled:
            self._stats_labels("cancelled")
            return False
        self._on_completed(done)
        return True

    def fail(
        self, task_id: str, token: str, reason: str, *, retriable: bool = True
    ) -> FailOutcome | None:
        with self._lock:
            task = self._owned(task_id, token)
            if task is None:
                return None
            if task.cancel_requested:
                self._remove(task_id)
                outcome = FailOutcome(
                    task_id=task_id, state=None, attempts=task.attempts, cancelled=True
                )
                snapshot = None
            else:
                now = self.clock()
                decision = self.retry_decision(task, retriable=retriable, now=now)
                task.failure_reason = reason
                if decision.state == TaskState.failed:
                    task.state = TaskState.failed
                    task.finished_at = now
                    task.lease_token = None
                    task.heartbeat_at = None
                elif decision.state == TaskState.delayed:
                    task.state = TaskState.delayed
                    task.available_at = decision.available_at
                    task.lease_token = None
                    task.heartbeat_at = None
                else:
                    self._to_waiting(task)
                outcome = FailOutcome(
                    task_id=task_id,
                    state=task.state,
                    attempts=task.attempts,
                    delay_ms=decision.delay_ms,
                )
                snapshot = self._snapshot(task)
        if snapshot is None:
            self._stats_labels("cancelled")
            return outcome
        self._on_failed(snapshot, outcome)
        return outcome

    def heartbeat(self, task_id: str, token: str) -> bool:
        with self._lock:
            task = self._owned(task_id, token)
            if task is None:
                return False
            task.heartbeat_at = self.clock()
            return True

    def update_progress(self, task_id: str, token: str, progress: int) -> int | None:
        with self._lock:
            task = self._owned(task_id, token)
            if task is None:
                return None
            value = max(0, min(100, int(progress)))
            task.progress = max(task.progress, value)
            task.heartbeat_at = self.clock()
            return task.progress

    def is_cancel_requested(self, task_id: str, token: str) -> bool:
        with self._lock:
            task = self._owned(task_id, token)
            if task is None:
                return True
            return task.cancel_requested

    def ack_cancelled(self, task_id: str, token: str) -> bool:
        with self._lock:
            task = self._owned(task_id, token)
            if task is None:
                return False
            if task.cancel_requested:
                self._remove(task_id)
            else:
                # Задачу успели поставить заново: начинаем с чистого листа
                task.attempts = 0
                task.progress = 0
                task.failure_reason = None
                self._to_waiting(task)
        self._stats_labels("cancelled")
        return True

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return self._snapshot(task) if task is not None else None

    def get_stats(self) -> QueueStats:
        stats = QueueStats()
        with self._lock:
            for task in self._tasks.values():
                setattr(stats, task.state.value, getattr(stats, task.state.value) + 1)
        return stats

    def cancel(self, task_id: str) -> CancelResult:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return CancelResult(task_id=task_id, found=False)
            if task.state == TaskState.active:
                task.cancel_requested = True
                return CancelResult(task_id=task_id, found=True, flagged=True)
            self._remove(task_id)
            return CancelResult(task_id=task_id, found=True, removed=True)

    def promote_delayed(self, now: float | None = None) -> int:
        ts = self.clock() if now is None else now
        promoted = 0
        with self._lock:
            for task in self._tasks.values():
                if task.state != TaskState.delayed:
                    continue
                if task.available_at is not None and task.available_at > ts:
                    continue
                self._to_waiting(task)
                promoted += 1
        return promoted

    def requeue_stalled(self, now: float | None = None) -> int:
        ts = self.clock() if now is None else now
        stalled: list[tuple[Task, bool]] = []
        with self._lock:
            for task in list(self._tasks.values()):
                if task.state != TaskState.active:
                    continue
                seen = task.heartbeat_at or task.processed_at or 0.0
                if seen + self.stall_timeout_sec > ts:
                    continue
                if task.cancel_requested:
                    self._remove(task.id)
                    continue
                if task.attempts >= task.max_attempts:
                    task.state = TaskState.failed
                    task.failure_reason = STALLED_LIMIT_REASON
                    task.finished_at = ts
                    task.lease_token = None
                    task.heartbeat_at = None
                    stalled.append((self._snapshot(task), True))
                else:
                    task.failure_reason = STALLED_REASON
                    self._to_waiting(task)
                    stalled.append((self._snapshot(task), False))
        for task, terminal in stalled:
            self._on_stalled(task, terminal)
        return len(stalled)

    def clean(
        self, state: TaskState, *, keep_last: int | None = None, max_age_sec: float | None = None
    ) -> int:
        if state not in TERMINAL_TASK_STATES:
            return 0
        now = self.clock()
        removed = 0
        with self._lock:
            done = sorted(
                (t for t in self._tasks.values() if t.state == state),
                key=lambda t: t.finished_at or 0.0,
                reverse=True,
            )
            for idx, task in enumerate(done):
                too_many = keep_last is not None and idx >= keep_last
                too_old = (
                    max_age_sec is not None and (task.finished_at or 0.0) < now - max_age_sec
                )
                if too_many or too_old:
                    self._remove(task.id)
                    removed += 1
        return removed
