"""
Сборка очередей стадий.

Очереди создаются один раз на процесс и передаются в оркестратор и воркеры.
Бэкенд выбирается по QUEUE_MODE: redis (по умолчанию) или inline (в памяти процесса).
"""

from __future__ import annotations

from meeting_pipeline.common.config import Settings, get_settings
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.domain.enums import StageName
from meeting_pipeline.domain.stages import PipelineConfig

from .base import StageQueue
from .events import EventBus
from .memory import InMemoryStageQueue
from .redis_queue import RedisStageQueue

log = get_project_logger()

StageQueues = dict[StageName, StageQueue]


def build_stage_queues(
    config: PipelineConfig,
    bus: EventBus | None = None,
    settings: Settings | None = None,
    *,
    redis=None,
) -> StageQueues:
    s = settings or get_settings()
    mode = (s.queue_mode or "redis").strip().lower()
    queues: StageQueues = {}
    for spec in config.all_stages():
        if mode == "inline":
            queues[spec.name] = InMemoryStageQueue(
                spec, bus=bus, stall_timeout_sec=s.stall_timeout_sec
            )
        else:
            queues[spec.name] = RedisStageQueue(
                spec,
                bus=bus,
                client=redis,
                key_prefix=s.queue_key_prefix,
                stall_timeout_sec=s.stall_timeout_sec,
            )
    log.info(
        "stage_queues_built",
        extra={"payload": {"mode": mode, "stages": [name.value for name in queues]}},
    )
    return queues
