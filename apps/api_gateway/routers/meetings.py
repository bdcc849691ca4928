"""
HTTP роуты пайплайна встречи.

- POST /v1/meetings/{meeting_id}/pipeline   запуск (встреча создаётся при отсутствии)
- GET  /v1/meetings/{meeting_id}/status     сводный статус по стадиям
- POST /v1/meetings/{meeting_id}/cancel     отмена
- POST /v1/meetings/{meeting_id}/restart    явный перезапуск

Авторизация: Depends(auth_dep)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from apps.api_gateway.deps import auth_dep, orchestrator_dep
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.common.security import AuthContext
from meeting_pipeline.contracts.http_api import (
    PipelineCancelResponse,
    PipelineStartRequest,
    PipelineStartResponse,
    PipelineStatusResponse,
)
from meeting_pipeline.services.orchestrator import PipelineOrchestrator
from meeting_pipeline.storage.db import db_session
from meeting_pipeline.storage.repositories import MeetingRepository

log = get_project_logger()

router = APIRouter()


def _current_status(meeting_id: str) -> str:
    with db_session() as s:
        m = MeetingRepository(s).get(meeting_id)
        return m.status.value if m else "unknown"


@router.post("/meetings/{meeting_id}/pipeline", response_model=PipelineStartResponse)
def start_pipeline(
    meeting_id: str,
    req: PipelineStartRequest,
    ctx: AuthContext = Depends(auth_dep),
    orchestrator: PipelineOrchestrator = Depends(orchestrator_dep),
) -> PipelineStartResponse:
    with db_session() as s:
        MeetingRepository(s).ensure(
            meeting_id=meeting_id,
            title=req.title,
            requester_id=req.requester_id or ctx.subject,
            participants=[{"name": p} for p in req.participants],
        )

    result = orchestrator.start_pipeline(
        meeting_id,
        req.source_locator,
        req.size_bytes,
        req.requester_id or ctx.subject,
    )
    return PipelineStartResponse(
        meeting_id=meeting_id,
        task_id=result.task.id,
        created=result.created,
        status=_current_status(meeting_id),
    )


@router.get("/meetings/{meeting_id}/status", response_model=PipelineStatusResponse)
def get_status(
    meeting_id: str,
    _: AuthContext = Depends(auth_dep),
    orchestrator: PipelineOrchestrator = Depends(orchestrator_dep),
) -> PipelineStatusResponse:
    return PipelineStatusResponse(**orchestrator.get_pipeline_status(meeting_id))


@router.post("/meetings/{meeting_id}/cancel", response_model=PipelineCancelResponse)
def cancel_pipeline(
    meeting_id: str,
    _: AuthContext = Depends(auth_dep),
    orchestrator: PipelineOrchestrator = Depends(orchestrator_dep),
) -> PipelineCancelResponse:
    return PipelineCancelResponse(**orchestrator.cancel_pipeline(meeting_id))


@router.post("/meetings/{meeting_id}/restart", response_model=PipelineStartResponse)
def restart_pipeline(
    meeting_id: str,
    _: AuthContext = Depends(auth_dep),
    orchestrator: PipelineOrchestrator = Depends(orchestrator_dep),
) -> PipelineStartResponse:
    result = orchestrator.restart_pipeline(meeting_id)
    return PipelineStartResponse(
        meeting_id=meeting_id,
        task_id=result.task.id,
        created=result.created,
        status=_current_status(meeting_id),
    )
