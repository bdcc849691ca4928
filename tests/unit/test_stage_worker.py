from __future__ import annotations

import threading
import time

import pytest

from meeting_pipeline.common.errors import NonRetriableStageError
from meeting_pipeline.domain.enums import StageName, TaskState
from meeting_pipeline.queue.memory import InMemoryStageQueue
from meeting_pipeline.queue.tasks import Task
from meeting_pipeline.worker.handlers import check_handlers
from meeting_pipeline.worker.stage_worker import StageWorker


def _queue(spec_factory, **spec_kwargs) -> InMemoryStageQueue:
    return InMemoryStageQueue(spec_factory(StageName.sentiment, **spec_kwargs), stall_timeout_sec=60)


def _worker(queue, handler, **kwargs) -> StageWorker:
    kwargs.setdefault("poll_interval_sec", 0.01)
    kwargs.setdefault("heartbeat_interval_sec", 0.05)
    return StageWorker(queue, handler, **kwargs)


def _enqueue(queue, meeting_id: str = "m-1", max_attempts: int = 3) -> str:
    task = Task.for_stage(StageName.sentiment, meeting_id, {}, max_attempts=max_attempts)
    return queue.enqueue(task).task.id


def test_success_completes_task(spec_factory) -> None:
    q = _queue(spec_factory)
    task_id = _enqueue(q)

    def handler(task, ctx):
        ctx.report_progress(40)
        return {"overall": "neutral"}

    assert _worker(q, handler).run_once() is True

    task = q.get_task(task_id)
    assert task.state == TaskState.completed
    assert task.result == {"overall": "neutral"}


def test_empty_queue_returns_false(spec_factory) -> None:
    assert _worker(_queue(spec_factory), lambda t, c: {}).run_once() is False


def test_exception_becomes_retriable_fail(spec_factory) -> None:
    q = _queue(spec_factory)
    task_id = _enqueue(q)

    def handler(task, ctx):
        raise RuntimeError("provider exploded")

    _worker(q, handler).run_once()

    task = q.get_task(task_id)
    assert task.state == TaskState.waiting
    assert task.attempts == 1
    assert task.failure_reason == "RuntimeError: provider exploded"


def test_non_retriable_error_fails_immediately(spec_factory) -> None:
    q = _queue(spec_factory)
    task_id = _enqueue(q)

    def handler(task, ctx):
        raise NonRetriableStageError("Unsupported format: txt")

    _worker(q, handler).run_once()

    task = q.get_task(task_id)
    assert task.state == TaskState.failed
    assert task.attempts == 1
    assert task.failure_reason == "Unsupported format: txt"


def test_timeout_fails_and_discards_late_result(spec_factory) -> None:
    q = _queue(spec_factory)
    task_id = _enqueue(q)
    release = threading.Event()
    finished = threading.Event()

    def handler(task, ctx):
        release.wait(5)
        ctx.report_progress(90)
        finished.set()
        return {"late": True}

    started = time.monotonic()
    _worker(q, handler, timeout_sec=0.2).run_once()
    assert time.monotonic() - started < 3

    task = q.get_task(task_id)
    assert task.state == TaskState.waiting
    assert task.failure_reason.startswith("Stage timed out")

    release.set()
    assert finished.wait(5)
    task = q.get_task(task_id)
    assert task.result is None
    assert task.progress == 0


def test_cancel_is_acknowledged_at_checkpoint(spec_factory) -> None:
    q = _queue(spec_factory)
    task_id = _enqueue(q)

    def handler(task, ctx):
        q.cancel(task.id)
        ctx.checkpoint()
        return {"never": True}

    _worker(q, handler).run_once()

    assert q.get_task(task_id) is None
    assert q.get_stats().total == 0


def test_cancel_after_handler_returns_drops_result(spec_factory) -> None:
    q = _queue(spec_factory)
    task_id = _enqueue(q)

    def handler(task, ctx):
        q.cancel(task.id)
        return {"ignored": True}

    _worker(q, handler).run_once()

    assert q.get_task(task_id) is None


def test_slots_drain_queue(spec_factory) -> None:
    q = _queue(spec_factory, concurrency=2)
    ids = [_enqueue(q, f"m-{idx}") for idx in range(5)]
    w = _worker(q, lambda task, ctx: {"meeting_id": task.meeting_id})

    w.start()
    try:
        deadline = time.monotonic() + 5
        while q.get_stats().completed < len(ids) and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        w.stop(timeout=2)

    assert q.get_stats().completed == 5
    assert all(q.get_task(i).state == TaskState.completed for i in ids)


def test_every_configured_stage_needs_a_handler(pipeline_config) -> None:
    with pytest.raises(RuntimeError, match="follow_up"):
        check_handlers(pipeline_config, {StageName.transcription: lambda t, c: {}})
