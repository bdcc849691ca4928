"""
Контракты задач очереди.

Правила:
- payload должен быть JSON-совместимым
- поле schema_version обязательно (для эволюции контрактов)
- id задачи детерминирован: "<stage>:<meeting_id>"
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from meeting_pipeline.common.ids import stage_task_id
from meeting_pipeline.domain.enums import StageName, TaskState

SchemaV1 = Literal["v1"]


@dataclass
class Task:
    id: str
    stage: StageName
    meeting_id: str
    payload: dict[str, Any]
    priority: int = 0
    max_attempts: int = 3
    attempts: int = 0
    state: TaskState = TaskState.waiting
    progress: int = 0
    created_at: float | None = None
    processed_at: float | None = None
    available_at: float | None = None
    finished_at: float | None = None
    failure_reason: str | None = None
    result: dict[str, Any] | None = None
    cancel_requested: bool = False
    lease_token: str | None = None
    heartbeat_at: float | None = None

    @classmethod
    def for_stage(
        cls,
        stage: StageName,
        meeting_id: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 3,
    ) -> Task:
        return cls(
            id=stage_task_id(stage, meeting_id),
            stage=stage,
            meeting_id=meeting_id,
            payload={"schema_version": "v1", "meeting_id": meeting_id, **payload},
            priority=priority,
            max_attempts=max_attempts,
        )

    def public_status(self) -> dict[str, Any]:
        """Что отдаём наружу (без lease-токена)."""
        return {
            "id": self.id,
            "state": self.state.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "processed_at": self.processed_at,
            "available_at": self.available_at,
            "finished_at": self.finished_at,
            "cancel_requested": self.cancel_requested,
        }


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.delayed + self.completed + self.failed

    def as_dict(self) -> dict[str, int]:
        return {**asdict(self), "total": self.total}


@dataclass
class CancelResult:
    task_id: str
    found: bool
    removed: bool = False
    flagged: bool = False


# Payload'ы задач стадий (оркестратор собирает их через asdict)
@dataclass
class TranscriptionPayload:
    source_locator: str
    size_bytes: int
    requester_id: str | None = None
    schema_version: SchemaV1 = "v1"


@dataclass
class AnalysisPayload:
    transcript: str
    requester_id: str | None = None
    participants: list[str] = field(default_factory=list)
    duration_sec: float | None = None
    schema_version: SchemaV1 = "v1"
