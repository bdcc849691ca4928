"""
Redis-бэкенд очереди стадии.

Раскладка ключей (prefix = QUEUE_KEY_PREFIX, stage = имя стадии):
- {prefix}:{stage}:task:{id}   HASH   поля задачи
- {prefix}:{stage}:waiting     ZSET   score = priority * 1e12 + seq (priority, затем FIFO)
- {prefix}:{stage}:active      ZSET   score = последний heartbeat
- {prefix}:{stage}:delayed     ZSET   score = available_at
- {prefix}:{stage}:completed   ZSET   score = finished_at
- {prefix}:{stage}:failed      ZSET   score = finished_at
- {prefix}:{stage}:seq         STRING счётчик порядка постановки

Каждый переход делается в WATCH/MULTI транзакции: конкурентный claim,
cancel или stall-sweep приводят к повтору, а не к гонке.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import redis

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.errors import QueueUnavailableError
from meeting_pipeline.common.ids import new_lease_token
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.domain.enums import (
    OPEN_TASK_STATES,
    TERMINAL_TASK_STATES,
    StageName,
    TaskState,
)

from .base import (
    STALLED_LIMIT_REASON,
    STALLED_REASON,
    EnqueueResult,
    FailOutcome,
    StageQueue,
)
from .redis import redis_client
from .tasks import CancelResult, QueueStats, Task

log = get_project_logger()

_PRIORITY_WEIGHT = 1_000_000_000_000

_INT_FIELDS = ("priority", "max_attempts", "attempts", "progress")
_FLOAT_FIELDS = ("created_at", "processed_at", "available_at", "finished_at", "heartbeat_at")
_STR_FIELDS = ("failure_reason", "lease_token")


def encode_task(task: Task) -> dict[str, str]:
    data: dict[str, str] = {
        "id": task.id,
        "stage": task.stage.value,
        "meeting_id": task.meeting_id,
        "state": task.state.value,
        "payload": json.dumps(task.payload, ensure_ascii=False),
        "result": json.dumps(task.result, ensure_ascii=False) if task.result is not None else "",
        "cancel_requested": "1" if task.cancel_requested else "0",
    }
    for name in _INT_FIELDS:
        data[name] = str(int(getattr(task, name)))
    for name in (*_FLOAT_FIELDS, *_STR_FIELDS):
        value = getattr(task, name)
        data[name] = "" if value is None else str(value)
    return data


def decode_task(data: dict[str, str]) -> Task:
    def _float(name: str) -> float | None:
        raw = data.get(name) or ""
        return float(raw) if raw else None

    result_raw = data.get("result") or ""
    return Task(
        id=data["id"],
        stage=StageName(data["stage"]),
        meeting_id=data.get("meeting_id") or "",
        payload=json.loads(data.get("payload") or "{}"),
        priority=int(data.get("priority") or 0),
        max_attempts=int(data.get("max_attempts") or 1),
        attempts=int(data.get("attempts") or 0),
        state=TaskState(data.get("state") or TaskState.waiting.value),
        progress=int(data.get("progress") or 0),
        created_at=_float("created_at"),
        processed_at=_float("processed_at"),
        available_at=_float("available_at"),
        finished_at=_float("finished_at"),
        failure_reason=data.get("failure_reason") or None,
        result=json.loads(result_raw) if result_raw else None,
        cancel_requested=data.get("cancel_requested") == "1",
        lease_token=data.get("lease_token") or None,
        heartbeat_at=_float("heartbeat_at"),
    )


class RedisStageQueue(StageQueue):
    def __init__(
        self,
        spec,
        *,
        client: redis.Redis | None = None,
        key_prefix: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(spec, **kwargs)
        self._client = client
        prefix = key_prefix if key_prefix is not None else get_settings().queue_key_prefix
        self._base = f"{prefix}:{self.stage.value}"

    @property
    def r(self) -> redis.Redis:
        if self._client is None:
            self._client = redis_client()
        return self._client

    # -------------------------------------------------------------------------
    # Ключи
    # -------------------------------------------------------------------------
    def task_key(self, task_id: str) -> str:
        return f"{self._base}:task:{task_id}"

    def state_key(self, state: TaskState) -> str:
        return f"{self._base}:{state.value}"

    @property
    def seq_key(self) -> str:
        return f"{self._base}:seq"

    # -------------------------------------------------------------------------
    # Транзакции
    # -------------------------------------------------------------------------
    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as e:
            log.error(
                "queue_redis_error",
                extra={
                    "payload": {"stage": self.stage.value, "op": op, "err": str(e)[:250]}
                },
            )
            raise QueueUnavailableError(
                "Очередь недоступна", details={"stage": self.stage.value, "op": op}
            ) from e

    def _tx(self, op: str, fn: Callable[[Any], Any], *watch: str) -> Any:
        with self._guard(op):
            return self.r.transaction(fn, *watch, value_from_callable=True)

    def _load(self, pipe, task_id: str) -> Task | None:
        data = pipe.hgetall(self.task_key(task_id))
        if not data:
            return None
        return decode_task(data)

    def _load_owned(self, pipe, task_id: str, token: str) -> Task | None:
        task = self._load(pipe, task_id)
        if task is None or task.state != TaskState.active:
            return None
        if not token or task.lease_token != token:
            return None
        return task

    def _waiting_score(self, pipe, priority: int) -> float:
        # incr выполняется сразу (до MULTI): пропуски в seq допустимы
        seq = int(pipe.incr(self.seq_key))
        return float(int(priority) * _PRIORITY_WEIGHT + seq)

    def _drop(self, pipe, task_id: str) -> None:
        pipe.delete(self.task_key(task_id))
        for state in TaskState:
            pipe.zrem(self.state_key(state), task_id)

    def _move(self, pipe, task: Task, prev: TaskState, score: float) -> None:
        if prev != task.state:
            pipe.zrem(self.state_key(prev), task.id)
        pipe.zadd(self.state_key(task.state), {task.id: score})
        pipe.hset(self.task_key(task.id), mapping=encode_task(task))

    @staticmethod
    def _reset_lease(task: Task) -> None:
        task.lease_token = None
        task.heartbeat_at = None

    # -------------------------------------------------------------------------
    # Контракт
    # -------------------------------------------------------------------------
    def enqueue(self, task: Task) -> EnqueueResult:
        key = self.task_key(task.id)

        def _fn(pipe) -> EnqueueResult:
            existing = self._load(pipe, task.id)
            if existing is not None and existing.state in OPEN_TASK_STATES:
                if existing.state == TaskState.active and existing.cancel_requested:
                    # Повторная постановка отменённой, но ещё работающей задачи
                    existing.cancel_requested = False
                    existing.payload = dict(task.payload)
                    pipe.multi()
                    pipe.hset(
                        key,
                        mapping={
                            "cancel_requested": "0",
                            "payload": json.dumps(existing.payload, ensure_ascii=False),
                        },
                    )
                return EnqueueResult(task=existing, created=False)

            new = Task(
                id=task.id,
                stage=self.stage,
                meeting_id=task.meeting_id,
                payload=dict(task.payload),
                priority=task.priority,
                max_attempts=task.max_attempts,
                created_at=self.clock(),
            )
            score = self._waiting_score(pipe, new.priority)
            pipe.multi()
            if existing is not None:
                self._drop(pipe, task.id)
            pipe.zadd(self.state_key(TaskState.waiting), {new.id: score})
            pipe.hset(key, mapping=encode_task(new))
            return EnqueueResult(task=new, created=True)

        result = self._tx("enqueue", _fn, key)
        self._on_enqueued(result.task, result.created)
        return result

    def claim(self) -> Task | None:
        self.promote_delayed()
        waiting_key = self.state_key(TaskState.waiting)
        active_key = self.state_key(TaskState.active)

        def _fn(pipe) -> Task | None:
            if int(pipe.zcard(active_key)) >= self.concurrency:
                return None
            head = pipe.zrange(waiting_key, 0, 0)
            if not head:
                return None
            task = self._load(pipe, head[0])
            pipe.multi()
            if task is None:
                # Осиротевший id (hash удалён): выкидываем из waiting
                pipe.zrem(waiting_key, head[0])
                return None
            now = self.clock()
            task.state = TaskState.active
            task.attempts += 1
            task.processed_at = now
            task.heartbeat_at = now
            task.lease_token = new_lease_token()
            self._move(pipe, task, TaskState.waiting, now)
            return task

        return self._tx("claim", _fn, waiting_key, active_key)

    def complete(self, task_id: str, token: str, result: dict[str, Any] | None = None) -> bool:
        def _fn(pipe) -> tuple[Task | None, bool]:
            task = self._load_owned(pipe, task_id, token)
            if task is None:
                return None, False
            pipe.multi()
            if task.cancel_requested:
                self._drop(pipe, task_id)
                return task, True
            now = self.clock()
            task.state = TaskState.completed
            task.progress = 100
            task.result = dict(result or {})
            task.finished_at = now
            self._reset_lease(task)
            self._move(pipe, task, TaskState.active, now)
            return task, False

        task, cancelled = self._tx("complete", _fn, self.task_key(task_id))
        if task is None:
            return False
        if cancelled:
            self._stats_labels("cancelled")
            return False
        self._on_completed(task)
        return True

    def fail(
        self, task_id: str, token: str, reason: str, *, retriable: bool = True
    ) -> FailOutcome | None:
        def _fn(pipe) -> tuple[Task | None, FailOutcome | None]:
            task = self._load_owned(pipe, task_id, token)
            if task is None:
                return None, None
            if task.cancel_requested:
                pipe.multi()
                self._drop(pipe, task_id)
                return None, FailOutcome(
                    task_id=task_id, state=None, attempts=task.attempts, cancelled=True
                )
            now = self.clock()
            decision = self.retry_decision(task, retriable=retriable, now=now)
            task.failure_reason = reason
            self._reset_lease(task)
            if decision.state == TaskState.failed:
                task.state = TaskState.failed
                task.finished_at = now
                score = now
            elif decision.state == TaskState.delayed:
                task.state = TaskState.delayed
                task.available_at = decision.available_at
                score = float(decision.available_at or now)
            else:
                task.state = TaskState.waiting
                task.available_at = None
                score = self._waiting_score(pipe, task.priority)
            pipe.multi()
            self._move(pipe, task, TaskState.active, score)
            outcome = FailOutcome(
                task_id=task_id,
                state=task.state,
                attempts=task.attempts,
                delay_ms=decision.delay_ms,
            )
            return task, outcome

        task, outcome = self._tx("fail", _fn, self.task_key(task_id))
        if outcome is None:
            return None
        if task is None:
            self._stats_labels("cancelled")
            return outcome
        self._on_failed(task, outcome)
        return outcome

    def heartbeat(self, task_id: str, token: str) -> bool:
        def _fn(pipe) -> bool:
            task = self._load_owned(pipe, task_id, token)
            if task is None:
                return False
            now = self.clock()
            pipe.multi()
            pipe.hset(self.task_key(task_id), "heartbeat_at", str(now))
            pipe.zadd(self.state_key(TaskState.active), {task_id: now})
            return True

        return self._tx("heartbeat", _fn, self.task_key(task_id))

    def update_progress(self, task_id: str, token: str, progress: int) -> int | None:
        def _fn(pipe) -> int | None:
            task = self._load_owned(pipe, task_id, token)
            if task is None:
                return None
            value = max(task.progress, max(0, min(100, int(progress))))
            now = self.clock()
            pipe.multi()
            pipe.hset(
                self.task_key(task_id),
                mapping={"progress": str(value), "heartbeat_at": str(now)},
            )
            pipe.zadd(self.state_key(TaskState.active), {task_id: now})
            return value

        return self._tx("update_progress", _fn, self.task_key(task_id))

    def is_cancel_requested(self, task_id: str, token: str) -> bool:
        with self._guard("is_cancel_requested"):
            state, lease, flag = self.r.hmget(
                self.task_key(task_id), ["state", "lease_token", "cancel_requested"]
            )
        if state != TaskState.active.value or not token or lease != token:
            return True
        return flag == "1"

    def ack_cancelled(self, task_id: str, token: str) -> bool:
        def _fn(pipe) -> bool:
            task = self._load_owned(pipe, task_id, token)
            if task is None:
                return False
            if task.cancel_requested:
                pipe.multi()
                self._drop(pipe, task_id)
                return True
            # Задачу успели поставить заново: начинаем с чистого листа
            task.state = TaskState.waiting
            task.attempts = 0
            task.progress = 0
            task.failure_reason = None
            self._reset_lease(task)
            score = self._waiting_score(pipe, task.priority)
            pipe.multi()
            self._move(pipe, task, TaskState.active, score)
            return True

        acked = self._tx("ack_cancelled", _fn, self.task_key(task_id))
        if acked:
            self._stats_labels("cancelled")
        return acked

    def get_task(self, task_id: str) -> Task | None:
        with self._guard("get_task"):
            data = self.r.hgetall(self.task_key(task_id))
        if not data:
            return None
        return decode_task(data)

    def get_stats(self) -> QueueStats:
        with self._guard("get_stats"):
            pipe = self.r.pipeline(transaction=False)
            for state in TaskState:
                pipe.zcard(self.state_key(state))
            counts = pipe.execute()
        return QueueStats(
            **{state.value: int(n) for state, n in zip(TaskState, counts, strict=True)}
        )

    def cancel(self, task_id: str) -> CancelResult:
        def _fn(pipe) -> CancelResult:
            task = self._load(pipe, task_id)
            if task is None:
                return CancelResult(task_id=task_id, found=False)
            pipe.multi()
            if task.state == TaskState.active:
                pipe.hset(self.task_key(task_id), "cancel_requested", "1")
                return CancelResult(task_id=task_id, found=True, flagged=True)
            self._drop(pipe, task_id)
            return CancelResult(task_id=task_id, found=True, removed=True)

        return self._tx("cancel", _fn, self.task_key(task_id))

    def promote_delayed(self, now: float | None = None) -> int:
        ts = self.clock() if now is None else now
        with self._guard("promote_delayed"):
            due = self.r.zrangebyscore(self.state_key(TaskState.delayed), "-inf", ts)

        def _promote(task_id: str) -> Callable[[Any], bool]:
            def _fn(pipe) -> bool:
                task = self._load(pipe, task_id)
                if task is None or task.state != TaskState.delayed:
                    return False
                task.state = TaskState.waiting
                task.available_at = None
                score = self._waiting_score(pipe, task.priority)
                pipe.multi()
                self._move(pipe, task, TaskState.delayed, score)
                return True

            return _fn

        promoted = 0
        for task_id in due:
            if self._tx("promote_delayed", _promote(task_id), self.task_key(task_id)):
                promoted += 1
        return promoted

    def requeue_stalled(self, now: float | None = None) -> int:
        ts = self.clock() if now is None else now
        cutoff = ts - self.stall_timeout_sec
        with self._guard("requeue_stalled"):
            candidates = self.r.zrangebyscore(self.state_key(TaskState.active), "-inf", cutoff)

        def _sweep(task_id: str) -> Callable[[Any], tuple[Task | None, bool]]:
            def _fn(pipe) -> tuple[Task | None, bool]:
                task = self._load(pipe, task_id)
                if task is None or task.state != TaskState.active:
                    return None, False
                seen = task.heartbeat_at or task.processed_at or 0.0
                if seen > cutoff:
                    return None, False
                if task.cancel_requested:
                    pipe.multi()
                    self._drop(pipe, task_id)
                    return None, False
                self._reset_lease(task)
                if task.attempts >= task.max_attempts:
                    task.state = TaskState.failed
                    task.failure_reason = STALLED_LIMIT_REASON
                    task.finished_at = ts
                    pipe.multi()
                    self._move(pipe, task, TaskState.active, ts)
                    return task, True
                task.state = TaskState.waiting
                task.failure_reason = STALLED_REASON
                score = self._waiting_score(pipe, task.priority)
                pipe.multi()
                self._move(pipe, task, TaskState.active, score)
                return task, False

            return _fn

        swept = 0
        for task_id in candidates:
            task, terminal = self._tx(
                "requeue_stalled", _sweep(task_id), self.task_key(task_id)
            )
            if task is None:
                continue
            swept += 1
            self._on_stalled(task, terminal)
        return swept

    def clean(
        self, state: TaskState, *, keep_last: int | None = None, max_age_sec: float | None = None
    ) -> int:
        if state not in TERMINAL_TASK_STATES:
            return 0
        key = self.state_key(state)
        now = self.clock()

        def _fn(pipe) -> int:
            doomed: set[str] = set()
            if keep_last is not None:
                doomed.update(pipe.zrevrange(key, max(0, int(keep_last)), -1))
            if max_age_sec is not None:
                doomed.update(pipe.zrangebyscore(key, "-inf", f"({now - max_age_sec}"))
            if not doomed:
                return 0
            pipe.multi()
            for task_id in doomed:
                pipe.delete(self.task_key(task_id))
                pipe.zrem(key, task_id)
            return len(doomed)

        return self._tx("clean", _fn, key)
