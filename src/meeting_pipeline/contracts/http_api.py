"""
HTTP API контракты (Pydantic-модели).

Назначение:
- валидация входа/выхода на уровне FastAPI
- стабильные структуры для клиентов
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

HTTP_API_VERSION = "v1"


# =============================================================================
# ЗАПРОСЫ
# =============================================================================
class PipelineStartRequest(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)

    source_locator: str = Field(min_length=1)
    size_bytes: int = Field(ge=0)
    requester_id: str | None = None

    # Если встречи ещё нет, она создаётся с этими полями
    title: str | None = None
    participants: list[str] = Field(default_factory=list)


# =============================================================================
# ОТВЕТЫ
# =============================================================================
class PipelineStartResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    meeting_id: str
    task_id: str
    created: bool
    status: str


class StageStatus(BaseModel):
    state: str
    progress: int = 0
    attempts: int = 0
    failure_reason: str | None = None
    required: bool = True


class ProcessingMeta(BaseModel):
    started_at: str | None = None
    completed_at: str | None = None
    cost: float = 0.0
    model: str | None = None
    error: str | None = None


class PipelineStatusResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    meeting_id: str
    status: str
    overall_progress: int
    status_message: str
    stages: dict[str, StageStatus] = Field(default_factory=dict)
    processing_meta: ProcessingMeta = Field(default_factory=ProcessingMeta)


class PipelineCancelResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    meeting_id: str
    status: str
    tasks: dict[str, str] = Field(default_factory=dict)


class QueueStatsResponse(BaseModel):
    api_version: str = Field(default=HTTP_API_VERSION)
    queues: dict[str, Any] = Field(default_factory=dict)
    total_jobs: int = 0
