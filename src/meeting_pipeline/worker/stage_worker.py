"""
Воркер стадии.

- N слотов (потоков) на стадию, каждый берёт по одной задаче (claim)
- обработчик выполняется во вспомогательном потоке, воркер ждёт его
  с таймаутом стадии и параллельно продлевает аренду (heartbeat)
- успех -> complete, любое исключение -> fail с понятной причиной
- из цикла не вылетает ни одно исключение
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.errors import (
    AppError,
    NonRetriableStageError,
    StageTimeoutError,
    TaskCancelled,
)
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.common.metrics import track_stage_latency
from meeting_pipeline.queue.base import StageQueue
from meeting_pipeline.queue.tasks import Task

from .context import TaskContext

log = get_project_logger()

StageHandler = Callable[[Task, TaskContext], dict[str, Any]]


@dataclass
class _Execution:
    result: dict[str, Any] | None = None
    error: BaseException | None = None
    done: threading.Event = field(default_factory=threading.Event)


def describe_error(e: BaseException) -> str:
    if isinstance(e, AppError):
        return e.message
    return f"{type(e).__name__}: {e}"


class StageWorker:
    def __init__(
        self,
        queue: StageQueue,
        handler: StageHandler,
        *,
        concurrency: int | None = None,
        timeout_sec: float | None = None,
        poll_interval_sec: float | None = None,
        heartbeat_interval_sec: float | None = None,
        service_name: str = "worker-pipeline",
    ) -> None:
        s = get_settings()
        self.queue = queue
        self.handler = handler
        self.stage = queue.stage
        self.concurrency = max(1, int(concurrency or queue.spec.concurrency))
        self.timeout_sec = float(timeout_sec or queue.spec.timeout_sec)
        self.poll_interval_sec = float(
            poll_interval_sec if poll_interval_sec is not None else s.worker_poll_interval_sec
        )
        self.heartbeat_interval_sec = max(
            0.05,
            float(
                heartbeat_interval_sec
                if heartbeat_interval_sec is not None
                else s.worker_heartbeat_interval_sec
            ),
        )
        self.service_name = service_name
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # -------------------------------------------------------------------------
    # Цикл
    # -------------------------------------------------------------------------
    def start(self) -> None:
        self._stop.clear()
        for slot in range(self.concurrency):
            t = threading.Thread(
                target=self._slot_loop,
                name=f"{self.stage.value}-worker-{slot}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
        log.info(
            "stage_worker_started",
            extra={"payload": {"stage": self.stage.value, "slots": self.concurrency}},
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads.clear()
        log.info("stage_worker_stopped", extra={"payload": {"stage": self.stage.value}})

    def _slot_loop(self) -> None:
        while not self._stop.is_set():
            try:
                worked = self.run_once()
            except Exception as e:
                log.error(
                    "stage_worker_loop_error",
                    exc_info=True,
                    extra={"payload": {"stage": self.stage.value, "err": str(e)[:250]}},
                )
                worked = False
            if not worked:
                self._stop.wait(self.poll_interval_sec)

    def run_once(self) -> bool:
        """Взять и обработать одну задачу. False: брать было нечего."""
        task = self.queue.claim()
        if task is None:
            return False
        self.process(task)
        return True

    # -------------------------------------------------------------------------
    # Одна задача
    # -------------------------------------------------------------------------
    def process(self, task: Task) -> None:
        ctx = TaskContext(self.queue, task, timeout_sec=self.timeout_sec)
        log.info(
            "task_claimed",
            extra={
                "payload": {
                    "stage": self.stage.value,
                    "task_id": task.id,
                    "attempt": task.attempts,
                    "max_attempts": task.max_attempts,
                }
            },
        )
        try:
            with track_stage_latency(self.service_name, self.stage.value):
                execution = self._execute(task, ctx)
            self._settle(task, ctx, execution)
        except Exception as e:
            # Ошибки самой очереди (брокер недоступен и т.п.): задачу подберёт stall-sweep
            log.error(
                "task_settle_failed",
                exc_info=True,
                extra={
                    "payload": {
                        "stage": self.stage.value,
                        "task_id": task.id,
                        "err": str(e)[:250],
                    }
                },
            )

    def _execute(self, task: Task, ctx: TaskContext) -> _Execution:
        execution = _Execution()

        def _run() -> None:
            try:
                execution.result = self.handler(task, ctx) or {}
            except BaseException as e:
                execution.error = e
            finally:
                execution.done.set()

        runner = threading.Thread(
            target=_run, name=f"{self.stage.value}-exec-{task.id}", daemon=True
        )
        runner.start()

        while not execution.done.wait(min(self.heartbeat_interval_sec, ctx.remaining_sec)):
            if ctx.remaining_sec <= 0:
                ctx.abandon()
                return _Execution(
                    error=StageTimeoutError(
                        f"Stage timed out after {self.timeout_sec:.0f}s",
                        details={"task_id": task.id},
                    )
                )
            ctx.heartbeat()
        return execution

    def _settle(self, task: Task, ctx: TaskContext, execution: _Execution) -> None:
        error = execution.error
        if error is None:
            try:
                ctx.checkpoint()
            except (TaskCancelled, StageTimeoutError) as e:
                error = e

        if error is None:
            if self.queue.complete(task.id, ctx.token, execution.result):
                return
            log.warning(
                "task_complete_rejected",
                extra={"payload": {"stage": self.stage.value, "task_id": task.id}},
            )
            return

        if isinstance(error, TaskCancelled):
            self.queue.ack_cancelled(task.id, ctx.token)
            log.info(
                "task_cancelled",
                extra={"payload": {"stage": self.stage.value, "task_id": task.id}},
            )
            return

        retriable = not isinstance(error, NonRetriableStageError)
        reason = describe_error(error)
        log.warning(
            "task_execution_failed",
            exc_info=(type(error), error, error.__traceback__)
            if not isinstance(error, AppError)
            else None,
            extra={
                "payload": {
                    "stage": self.stage.value,
                    "task_id": task.id,
                    "attempt": task.attempts,
                    "retriable": retriable,
                    "reason": reason[:250],
                }
            },
        )
        self.queue.fail(task.id, ctx.token, reason, retriable=retriable)
