from __future__ import annotations

import pytest

from meeting_pipeline.common.errors import ConflictError, NotFoundError, QueueUnavailableError
from meeting_pipeline.domain.enums import MeetingStatus, StageName, StageRunState, TaskState
from meeting_pipeline.queue.events import EventBus
from meeting_pipeline.queue.memory import InMemoryStageQueue
from meeting_pipeline.services.orchestrator import CANCELLED_BY_USER, PipelineOrchestrator
from meeting_pipeline.storage.db import db_session
from meeting_pipeline.storage.repositories import MeetingRepository

FAN_OUT = (StageName.extraction, StageName.sentiment, StageName.follow_up)


def _meeting(meeting_id: str):
    with db_session() as s:
        return MeetingRepository(s).get(meeting_id)


def _stage_runs(meeting_id: str) -> dict[StageName, StageRunState]:
    with db_session() as s:
        return {r.stage: r.state for r in MeetingRepository(s).list_stage_runs(meeting_id)}


def _start(pipeline, meeting_factory, meeting_id: str = "m-1"):
    meeting_factory(meeting_id, requester_id="u-1")
    with db_session() as s:
        MeetingRepository(s).set_outputs(
            meeting_id, transcript={"text": "Alex will send the spec.", "duration_sec": 30.0}
        )
    return pipeline.orchestrator.start_pipeline(meeting_id, "/data/m.mp3", 1024, "u-1")


def _run(queue, result=None):
    t = queue.claim()
    assert t is not None
    assert queue.complete(t.id, t.lease_token, result or {}) is True
    return t


def _fail_forever(queue):
    while True:
        t = queue.claim()
        if t is None:
            return
        queue.fail(t.id, t.lease_token, "boom")


def test_start_is_idempotent(pipeline, meeting_factory) -> None:
    first = _start(pipeline, meeting_factory)
    second = pipeline.orchestrator.start_pipeline("m-1", "/data/m.mp3", 1024, "u-1")

    assert first.created is True
    assert second.created is False
    assert pipeline.queues[StageName.transcription].get_stats().waiting == 1
    m = _meeting("m-1")
    assert m.status == MeetingStatus.pending
    assert m.source_locator == "/data/m.mp3"
    assert first.task.payload == {
        "schema_version": "v1",
        "meeting_id": "m-1",
        "source_locator": "/data/m.mp3",
        "size_bytes": 1024,
        "requester_id": "u-1",
    }


def test_start_unknown_meeting(pipeline) -> None:
    with pytest.raises(NotFoundError):
        pipeline.orchestrator.start_pipeline("nope", "/data/m.mp3", 10, "u-1")


def test_start_broker_down_keeps_status(pipeline, meeting_factory, monkeypatch) -> None:
    meeting_factory("m-1")

    def _down(task):
        raise QueueUnavailableError()

    monkeypatch.setattr(pipeline.queues[StageName.transcription], "enqueue", _down)

    with pytest.raises(QueueUnavailableError):
        pipeline.orchestrator.start_pipeline("m-1", "/data/m.mp3", 10, "u-1")
    assert _meeting("m-1").status == MeetingStatus.scheduled


def test_scenario_a_entry_success_fans_out(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory)
    _run(pipeline.queues[StageName.transcription], {"segments": 6})

    m = _meeting("m-1")
    assert m.status == MeetingStatus.transcribed
    assert m.outstanding_stages == 2
    for stage in FAN_OUT:
        task = pipeline.queues[stage].get_task(f"{stage.value}:m-1")
        assert task.state == TaskState.waiting
        assert task.payload["transcript"] == "Alex will send the spec."
        assert task.payload["duration_sec"] == 30.0
        assert task.payload["schema_version"] == "v1"
        assert task.payload["requester_id"] == "u-1"
    assert _stage_runs("m-1") == {stage: StageRunState.queued for stage in FAN_OUT}

    pipeline.queues[StageName.extraction].claim()
    view = pipeline.orchestrator.get_pipeline_status("m-1")
    assert view["status"] == "transcribed"
    assert view["stages"]["transcription"]["state"] == "completed"
    assert view["stages"]["extraction"]["state"] == "active"
    assert view["stages"]["sentiment"]["state"] == "waiting"
    assert view["stages"]["follow_up"]["required"] is False
    assert view["overall_progress"] == 50


def test_scenario_b_entry_exhausts_retries(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory)
    entry = pipeline.queues[StageName.transcription]

    _fail_forever(entry)

    assert entry.get_task("transcription:m-1").attempts == 3
    m = _meeting("m-1")
    assert m.status == MeetingStatus.failed
    assert m.processing_error == "boom"
    assert m.processing_completed_at is not None
    for stage in FAN_OUT:
        assert pipeline.queues[stage].get_stats().total == 0
    assert _stage_runs("m-1") == {}


def test_scenario_c_all_stages_complete(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory)
    _run(pipeline.queues[StageName.transcription])
    _run(pipeline.queues[StageName.extraction])
    assert _meeting("m-1").status == MeetingStatus.transcribed

    _run(pipeline.queues[StageName.sentiment])
    m = _meeting("m-1")
    assert m.status == MeetingStatus.completed
    assert m.outstanding_stages == 0
    completed_at = m.processing_completed_at
    assert completed_at is not None

    # поздние/повторные callback'и ничего не меняют
    _run(pipeline.queues[StageName.follow_up])
    pipeline.orchestrator.on_stage_complete(StageName.extraction, "m-1", {})
    m = _meeting("m-1")
    assert m.status == MeetingStatus.completed
    assert m.processing_completed_at == completed_at
    assert m.outstanding_stages == 0
    assert set(_stage_runs("m-1").values()) == {StageRunState.completed}


def test_duplicate_completion_does_not_double_decrement(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory)
    _run(pipeline.queues[StageName.transcription])
    _run(pipeline.queues[StageName.extraction])

    pipeline.orchestrator.on_stage_complete(StageName.extraction, "m-1", {})
    pipeline.orchestrator.on_stage_complete(StageName.transcription, "m-1", {})

    m = _meeting("m-1")
    assert m.outstanding_stages == 1
    assert m.status == MeetingStatus.transcribed
    assert pipeline.queues[StageName.extraction].get_stats().completed == 1


def test_scenario_d_cancel_mid_fan_out(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory)
    _run(pipeline.queues[StageName.transcription])
    active = pipeline.queues[StageName.extraction].claim()
    _run(pipeline.queues[StageName.sentiment])

    res = pipeline.orchestrator.cancel_pipeline("m-1")

    assert res["status"] == "cancelled"
    assert res["tasks"] == {
        "transcription": "removed",
        "extraction": "flagged",
        "sentiment": "removed",
        "follow_up": "removed",
    }
    m = _meeting("m-1")
    assert m.status == MeetingStatus.cancelled
    assert m.processing_error == CANCELLED_BY_USER
    assert m.processing_completed_at is not None

    # активная задача завершается, но результат не принимается
    extraction = pipeline.queues[StageName.extraction]
    assert extraction.complete(active.id, active.lease_token, {}) is False
    assert extraction.get_task(active.id) is None
    assert _meeting("m-1").status == MeetingStatus.cancelled

    again = pipeline.orchestrator.cancel_pipeline("m-1")
    assert again["status"] == "cancelled"
    view = pipeline.orchestrator.get_pipeline_status("m-1")
    assert view["status"] == "cancelled"
    assert {s["state"] for s in view["stages"].values()} == {"cancelled"}


def test_cancel_between_transcribed_and_fan_out(pipeline, meeting_factory, monkeypatch) -> None:
    orch = pipeline.orchestrator
    _start(pipeline, meeting_factory)
    real_fan_out = orch._fan_out

    def _cancel_then_fan_out(meeting_id, specs, payload):
        orch.cancel_pipeline(meeting_id)
        return real_fan_out(meeting_id, specs, payload)

    monkeypatch.setattr(orch, "_fan_out", _cancel_then_fan_out)

    _run(pipeline.queues[StageName.transcription])

    assert _meeting("m-1").status == MeetingStatus.cancelled
    for spec in pipeline.config.all_stages():
        assert pipeline.queues[spec.name].get_task(f"{spec.name.value}:m-1") is None
        assert pipeline.queues[spec.name].get_stats().total == 0


def test_scenario_e_optional_failure_still_completes(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory)
    _run(pipeline.queues[StageName.transcription])

    _fail_forever(pipeline.queues[StageName.follow_up])
    assert pipeline.queues[StageName.follow_up].get_task("follow_up:m-1").attempts == 2
    assert _meeting("m-1").processing_error is None

    _run(pipeline.queues[StageName.extraction])
    _run(pipeline.queues[StageName.sentiment])

    m = _meeting("m-1")
    assert m.status == MeetingStatus.completed
    assert _stage_runs("m-1")[StageName.follow_up] == StageRunState.failed


def test_required_stage_failure_fails_meeting(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory)
    _run(pipeline.queues[StageName.transcription])

    _fail_forever(pipeline.queues[StageName.sentiment])
    _run(pipeline.queues[StageName.extraction])

    m = _meeting("m-1")
    assert m.status == MeetingStatus.failed
    assert m.processing_error == "sentiment failed: boom"
    view = pipeline.orchestrator.get_pipeline_status("m-1")
    assert view["stages"]["sentiment"]["failure_reason"] == "boom"
    assert view["processing_meta"]["error"] == "sentiment failed: boom"


def test_status_unknown_stage_on_queue_error(pipeline, meeting_factory, monkeypatch) -> None:
    _start(pipeline, meeting_factory)

    def _broken(task_id):
        raise QueueUnavailableError()

    monkeypatch.setattr(pipeline.queues[StageName.sentiment], "get_task", _broken)

    view = pipeline.orchestrator.get_pipeline_status("m-1")
    assert view["stages"]["sentiment"]["state"] == "unknown"
    assert view["stages"]["extraction"]["state"] == "pending"
    assert view["stages"]["transcription"]["state"] == "waiting"
    assert view["status"] == "pending"


def test_fan_out_enqueue_failure_is_repaired_by_reconcile(
    pipeline, meeting_factory, monkeypatch
) -> None:
    _start(pipeline, meeting_factory)
    sentiment = pipeline.queues[StageName.sentiment]

    def _down(task):
        raise QueueUnavailableError()

    monkeypatch.setattr(sentiment, "enqueue", _down)
    _run(pipeline.queues[StageName.transcription])

    m = _meeting("m-1")
    assert m.status == MeetingStatus.transcribed
    assert m.processing_error == "Fan-out enqueue failed: sentiment"
    assert pipeline.queues[StageName.extraction].get_stats().waiting == 1

    monkeypatch.undo()
    report = pipeline.orchestrator.reconcile(limit=10)

    assert report.requeued == 1
    assert sentiment.get_task("sentiment:m-1").state == TaskState.waiting
    # уже поставленные стадии не дублируются
    assert pipeline.queues[StageName.extraction].get_stats().total == 1


def test_reconcile_replays_lost_events(pipeline_config, db, meeting_factory) -> None:
    # очереди публикуют в шину, на которую оркестратор не подписан
    silent_bus = EventBus()
    queues = {
        spec.name: InMemoryStageQueue(spec, bus=silent_bus)
        for spec in pipeline_config.all_stages()
    }
    orchestrator = PipelineOrchestrator(pipeline_config, queues)
    meeting_factory("m-1")
    orchestrator.start_pipeline("m-1", "/data/m.mp3", 1024, "u-1")

    _run(queues[StageName.transcription])
    assert _meeting("m-1").status == MeetingStatus.pending

    report = orchestrator.reconcile(limit=10)
    assert report.replayed_entry == 1
    assert _meeting("m-1").status == MeetingStatus.transcribed
    assert all(queues[s].get_stats().waiting == 1 for s in FAN_OUT)

    _run(queues[StageName.extraction])
    _run(queues[StageName.sentiment])
    report = orchestrator.reconcile(limit=10)

    assert report.replayed_stages == 2
    assert _meeting("m-1").status == MeetingStatus.completed

    # повторный прогон ничего не трогает
    report = orchestrator.reconcile(limit=10)
    assert report.scanned == 0


def test_restart_clears_outputs(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory)
    _fail_forever(pipeline.queues[StageName.transcription])
    assert _meeting("m-1").status == MeetingStatus.failed

    res = pipeline.orchestrator.restart_pipeline("m-1")

    assert res.created is True
    m = _meeting("m-1")
    assert m.status == MeetingStatus.pending
    assert m.transcript is None
    assert m.processing_error is None
    assert m.source_locator == "/data/m.mp3"
    task = pipeline.queues[StageName.transcription].get_task("transcription:m-1")
    assert task.state == TaskState.waiting
    assert task.attempts == 0


def test_start_on_finished_meeting_requires_restart(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory)
    pipeline.orchestrator.cancel_pipeline("m-1")

    with pytest.raises(ConflictError):
        pipeline.orchestrator.start_pipeline("m-1", "/data/m.mp3", 1024, "u-1")


def test_queue_stats(pipeline, meeting_factory) -> None:
    _start(pipeline, meeting_factory, "m-1")
    _start(pipeline, meeting_factory, "m-2")
    _run(pipeline.queues[StageName.transcription])

    stats = pipeline.orchestrator.get_queue_stats()

    assert stats["transcription"]["completed"] == 1
    assert stats["transcription"]["waiting"] == 1
    assert stats["extraction"]["waiting"] == 1
    assert stats["total_jobs"] == 5
