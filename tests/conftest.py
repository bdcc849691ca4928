from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from meeting_pipeline.domain.enums import StageName
from meeting_pipeline.domain.stages import PipelineConfig, StageSpec
from meeting_pipeline.queue.events import EventBus
from meeting_pipeline.queue.memory import InMemoryStageQueue
from meeting_pipeline.services.orchestrator import PipelineOrchestrator
from meeting_pipeline.services.pipeline_service import Pipeline
from meeting_pipeline.storage.db import configure_engine, create_schema, db_session
from meeting_pipeline.storage.models import Base
from meeting_pipeline.storage.repositories import MeetingRepository


class FakeClock:
    """Ручные часы для очередей: время двигаем сами."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, sec: float) -> None:
        self.now += sec


def make_spec(
    name: StageName,
    *,
    required: bool = True,
    priority: int = 0,
    max_attempts: int = 3,
    backoff_base_ms: int = 0,
    backoff_max_ms: int = 60_000,
    concurrency: int = 2,
    timeout_sec: int = 30,
    keep_completed: int = 100,
    keep_failed: int = 100,
) -> StageSpec:
    return StageSpec(
        name=name,
        required=required,
        priority=priority,
        max_attempts=max_attempts,
        backoff_base_ms=backoff_base_ms,
        backoff_max_ms=backoff_max_ms,
        concurrency=concurrency,
        timeout_sec=timeout_sec,
        keep_completed=keep_completed,
        keep_failed=keep_failed,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def spec_factory():
    return make_spec


@pytest.fixture()
def pipeline_config() -> PipelineConfig:
    """Как по умолчанию: extraction/sentiment обязательные, follow_up опциональный."""
    return PipelineConfig(
        stages={
            StageName.transcription: make_spec(StageName.transcription),
            StageName.extraction: make_spec(StageName.extraction),
            StageName.sentiment: make_spec(StageName.sentiment),
            StageName.follow_up: make_spec(StageName.follow_up, required=False, max_attempts=2),
        }
    )


@pytest.fixture()
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_engine(engine)
    create_schema()
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def pipeline(db, pipeline_config) -> Pipeline:
    bus = EventBus()
    queues = {
        spec.name: InMemoryStageQueue(spec, bus=bus, stall_timeout_sec=60)
        for spec in pipeline_config.all_stages()
    }
    orchestrator = PipelineOrchestrator(pipeline_config, queues, bus=bus)
    return Pipeline(config=pipeline_config, bus=bus, queues=queues, orchestrator=orchestrator)


@pytest.fixture()
def meeting_factory(db):
    def _create(meeting_id: str = "m-1", **kwargs) -> str:
        with db_session() as s:
            MeetingRepository(s).ensure(meeting_id=meeting_id, **kwargs)
        return meeting_id

    return _create
