"""
Сервисный слой: сборка пайплайна на процесс.

Назначение:
- один PipelineConfig, одна шина событий, одни очереди на процесс
- оркестратор подписывается на шину (события complete/fail стадий)
- воркеры стадий получают те же очереди
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from meeting_pipeline.common.config import Settings, get_settings
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.domain.enums import StageName
from meeting_pipeline.domain.stages import PipelineConfig, build_pipeline_config
from meeting_pipeline.llm.orchestrator import LLMOrchestrator
from meeting_pipeline.queue.events import EventBus
from meeting_pipeline.queue.registry import StageQueues, build_stage_queues
from meeting_pipeline.stt.base import STTProvider
from meeting_pipeline.worker.handlers import build_stage_handlers, check_handlers
from meeting_pipeline.worker.stage_worker import StageWorker

from .orchestrator import PipelineOrchestrator

log = get_project_logger()


@dataclass
class Pipeline:
    config: PipelineConfig
    bus: EventBus
    queues: StageQueues
    orchestrator: PipelineOrchestrator


def build_pipeline(settings: Settings | None = None, *, redis=None) -> Pipeline:
    s = settings or get_settings()
    config = build_pipeline_config(s)
    bus = EventBus()
    queues = build_stage_queues(config, bus, s, redis=redis)
    orchestrator = PipelineOrchestrator(config, queues, bus=bus)
    return Pipeline(config=config, bus=bus, queues=queues, orchestrator=orchestrator)


def build_stage_workers(
    pipeline: Pipeline,
    stages: Iterable[StageName] | None = None,
    *,
    stt: STTProvider | None = None,
    llm: LLMOrchestrator | None = None,
    service_name: str = "worker-pipeline",
) -> list[StageWorker]:
    handlers = build_stage_handlers(stt=stt, llm=llm)
    check_handlers(pipeline.config, handlers)

    selected = list(stages) if stages is not None else [s.name for s in pipeline.config.all_stages()]
    workers: list[StageWorker] = []
    for stage in selected:
        if stage not in pipeline.queues:
            raise ValueError(f"Стадия {stage.value} не включена в пайплайн")
        workers.append(
            StageWorker(pipeline.queues[stage], handlers[stage], service_name=service_name)
        )
    return workers


# Процессный пайплайн для API Gateway (строится лениво)
_pipeline: Pipeline | None = None


def get_pipeline() -> Pipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def set_pipeline(pipeline: Pipeline | None) -> None:
    """Подменить процессный пайплайн (inline-режим, тесты)."""
    global _pipeline
    _pipeline = pipeline
