from __future__ import annotations

import pytest

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.domain.enums import MeetingStatus, StageName, TaskState
from meeting_pipeline.jobs.reconciliation_job import run
from meeting_pipeline.queue.base import STALLED_REASON
from meeting_pipeline.queue.events import EventBus
from meeting_pipeline.queue.memory import InMemoryStageQueue
from meeting_pipeline.services.orchestrator import PipelineOrchestrator
from meeting_pipeline.services.pipeline_service import Pipeline
from meeting_pipeline.storage.db import db_session
from meeting_pipeline.storage.repositories import MeetingRepository


@pytest.fixture()
def clocked_pipeline(db, pipeline_config, clock) -> Pipeline:
    bus = EventBus()
    queues = {
        spec.name: InMemoryStageQueue(spec, bus=bus, clock=clock, stall_timeout_sec=60)
        for spec in pipeline_config.all_stages()
    }
    orchestrator = PipelineOrchestrator(pipeline_config, queues, bus=bus)
    return Pipeline(config=pipeline_config, bus=bus, queues=queues, orchestrator=orchestrator)


@pytest.fixture()
def job_settings(monkeypatch):
    s = get_settings()
    monkeypatch.setattr(s, "reconciliation_enabled", True)
    monkeypatch.setattr(s, "queue_clean_max_age_sec", 10)
    return s


def _status(meeting_id: str) -> MeetingStatus:
    with db_session() as s:
        return MeetingRepository(s).get(meeting_id).status


def test_disabled_job_is_skipped(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "reconciliation_enabled", False)

    assert run() is None


def test_sweeps_queues_and_reconciles(
    clocked_pipeline, meeting_factory, clock, job_settings
) -> None:
    p = clocked_pipeline
    entry = p.queues[StageName.transcription]
    for meeting_id in ("m-1", "m-2"):
        meeting_factory(meeting_id)
        p.orchestrator.start_pipeline(meeting_id, f"/data/{meeting_id}.mp3", 10)

    # m-1: воркер взял задачу и пропал; m-2: транскрипция завершена
    stuck = entry.claim()
    done = entry.claim()
    assert entry.complete(done.id, done.lease_token, {}) is True
    assert _status(done.meeting_id) == MeetingStatus.transcribed

    clock.advance(61)
    result = run(pipeline=p, limit=50)

    assert result.stalled == 1
    assert result.cleaned == 1
    assert result.queue_errors == {}
    assert result.report.scanned == 2
    assert result.report.errors == 0

    requeued = entry.get_task(stuck.id)
    assert requeued.state == TaskState.waiting
    assert requeued.failure_reason == STALLED_REASON
    assert entry.get_task(done.id) is None


def test_queue_error_does_not_stop_sweep(
    clocked_pipeline, meeting_factory, job_settings, monkeypatch
) -> None:
    p = clocked_pipeline

    def _down(now=None):
        raise RuntimeError("redis down")

    monkeypatch.setattr(p.queues[StageName.sentiment], "requeue_stalled", _down)

    result = run(pipeline=p)

    assert result.queue_errors == {"sentiment": "redis down"}
    assert result.report is not None
