"""
Служебные роуты очередей стадий.

- GET /v1/queues/stats   счётчики задач по стадиям (только service-ключ)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from apps.api_gateway.deps import orchestrator_dep, service_auth_dep
from meeting_pipeline.common.security import AuthContext
from meeting_pipeline.contracts.http_api import QueueStatsResponse
from meeting_pipeline.services.orchestrator import PipelineOrchestrator

router = APIRouter()


@router.get("/queues/stats", response_model=QueueStatsResponse)
def queue_stats(
    _: AuthContext = Depends(service_auth_dep),
    orchestrator: PipelineOrchestrator = Depends(orchestrator_dep),
) -> QueueStatsResponse:
    stats = orchestrator.get_queue_stats()
    total = int(stats.pop("total_jobs", 0))
    return QueueStatsResponse(queues=stats, total_jobs=total)
