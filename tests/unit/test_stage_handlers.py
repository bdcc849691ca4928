from __future__ import annotations

from dataclasses import replace

import pytest

from meeting_pipeline.common.errors import (
    ErrCode,
    NonRetriableStageError,
    ProviderError,
    TaskCancelled,
)
from meeting_pipeline.domain.enums import MeetingStatus, StageName
from meeting_pipeline.llm.mock import MockLLMProvider
from meeting_pipeline.llm.orchestrator import LLMOrchestrator
from meeting_pipeline.queue.memory import InMemoryStageQueue
from meeting_pipeline.queue.tasks import Task
from meeting_pipeline.storage.db import db_session
from meeting_pipeline.storage.repositories import MeetingRepository
from meeting_pipeline.stt.mock import MockSTTProvider
from meeting_pipeline.worker.context import TaskContext
from meeting_pipeline.worker.handlers import build_stage_handlers
from meeting_pipeline.worker.stage_worker import StageWorker

TRANSCRIPT = (
    "Speaker 1: Let's decide to ship the payment feature next sprint. "
    "Speaker 2: I need help with the webhook validation."
)


def _claimed(spec_factory, stage: StageName, meeting_id: str, payload: dict):
    q = InMemoryStageQueue(spec_factory(stage))
    q.enqueue(Task.for_stage(stage, meeting_id, payload))
    task = q.claim()
    return task, TaskContext(q, task, timeout_sec=30)


def _meeting(meeting_id: str):
    with db_session() as s:
        return MeetingRepository(s).get(meeting_id)


@pytest.fixture()
def handlers():
    return build_stage_handlers(stt=MockSTTProvider(), llm=LLMOrchestrator(MockLLMProvider()))


@pytest.fixture()
def audio_file(tmp_path):
    path = tmp_path / "standup.mp3"
    path.write_bytes(b"ID3" + b"\x00" * 1024)
    return path


def test_transcription_writes_transcript_and_meta(
    handlers, spec_factory, meeting_factory, audio_file
) -> None:
    meeting_factory("m-1")
    task, ctx = _claimed(
        spec_factory,
        StageName.transcription,
        "m-1",
        {"source_locator": str(audio_file), "size_bytes": audio_file.stat().st_size},
    )

    result = handlers[StageName.transcription](task, ctx)

    assert result["segments"] == 6
    assert result["model"] == "mock-whisper"
    m = _meeting("m-1")
    assert m.status == MeetingStatus.processing
    assert m.transcript["text"].startswith("Good morning everyone")
    assert len(m.transcript["segments"]) == 6
    assert m.participants == [{"name": "Speaker 1"}, {"name": "Speaker 2"}]
    assert m.processing_started_at is not None
    assert m.processing_model == "mock-whisper"
    assert ctx.queue.get_task(task.id).progress == 90


def test_transcription_keeps_given_participants(
    handlers, spec_factory, meeting_factory, audio_file
) -> None:
    meeting_factory("m-1", participants=[{"name": "Alex"}])
    task, ctx = _claimed(
        spec_factory,
        StageName.transcription,
        "m-1",
        {"source_locator": f"file://{audio_file}", "size_bytes": 100},
    )

    handlers[StageName.transcription](task, ctx)

    assert _meeting("m-1").participants == [{"name": "Alex"}]


@pytest.mark.parametrize(
    ("locator", "size_bytes", "message"),
    [
        ("/data/notes.txt", 100, "Unsupported format"),
        ("/data/huge.mp3", 200 * 1024 * 1024, "File too large"),
        ("/data/missing.mp3", 100, "Audio file not found"),
    ],
)
def test_transcription_rejects_bad_input(
    handlers, spec_factory, meeting_factory, locator, size_bytes, message
) -> None:
    meeting_factory("m-1")
    task, ctx = _claimed(
        spec_factory,
        StageName.transcription,
        "m-1",
        {"source_locator": locator, "size_bytes": size_bytes},
    )

    with pytest.raises(NonRetriableStageError, match=message):
        handlers[StageName.transcription](task, ctx)


def test_missing_meeting_is_not_retriable(handlers, spec_factory, db) -> None:
    task, ctx = _claimed(spec_factory, StageName.extraction, "ghost", {"transcript": TRANSCRIPT})

    with pytest.raises(NonRetriableStageError) as exc:
        handlers[StageName.extraction](task, ctx)
    assert exc.value.code == ErrCode.NOT_FOUND


def test_extraction_writes_items_and_decisions(handlers, spec_factory, meeting_factory) -> None:
    meeting_factory("m-1")
    task, ctx = _claimed(spec_factory, StageName.extraction, "m-1", {"transcript": TRANSCRIPT})

    result = handlers[StageName.extraction](task, ctx)

    assert result["action_items"] == 1
    assert result["decisions"] == 1
    m = _meeting("m-1")
    assert m.action_items[0]["id"] == "ai_1"
    assert m.action_items[0]["assigned_to"] == "Alex"
    assert m.decisions[0]["id"] == "dec_1"
    assert m.decisions[0]["description"] == "Ship the payment feature next sprint"


def test_sentiment_and_follow_up(handlers, spec_factory, meeting_factory) -> None:
    meeting_factory("m-1")
    payload = {"transcript": TRANSCRIPT, "participants": ["Speaker 1", "Speaker 2"]}

    task, ctx = _claimed(spec_factory, StageName.sentiment, "m-1", payload)
    handlers[StageName.sentiment](task, ctx)
    task, ctx = _claimed(spec_factory, StageName.follow_up, "m-1", payload)
    handlers[StageName.follow_up](task, ctx)

    m = _meeting("m-1")
    assert m.sentiment["overall"] == "neutral"
    assert "participants" not in m.sentiment
    assert [p["name"] for p in m.participant_sentiment] == ["Speaker 1", "Speaker 2"]
    assert m.follow_ups[0]["id"] == "fu_1"
    assert m.follow_ups[0]["status"] == "open"


def test_timeline_drops_events_past_duration(spec_factory, meeting_factory) -> None:
    llm = LLMOrchestrator(
        MockLLMProvider(
            {
                "timeline": {
                    "timeline": [
                        {"timestamp_sec": 90.0, "title": "Out of range", "kind": "topic"},
                        {"timestamp_sec": 10.0, "title": "Kickoff", "kind": "topic"},
                    ]
                }
            }
        )
    )
    handler = build_stage_handlers(stt=MockSTTProvider(), llm=llm)[StageName.timeline]
    meeting_factory("m-1")
    task, ctx = _claimed(
        spec_factory, StageName.timeline, "m-1", {"transcript": TRANSCRIPT, "duration_sec": 30}
    )

    handler(task, ctx)

    assert [e["title"] for e in _meeting("m-1").timeline] == ["Kickoff"]


def test_empty_transcript_is_not_retriable(handlers, spec_factory, meeting_factory) -> None:
    meeting_factory("m-1")
    task, ctx = _claimed(spec_factory, StageName.sentiment, "m-1", {"transcript": "  "})

    with pytest.raises(NonRetriableStageError) as exc:
        handlers[StageName.sentiment](task, ctx)
    assert exc.value.code == ErrCode.VALIDATION


def test_malformed_llm_result_is_stage_failure(spec_factory, meeting_factory) -> None:
    llm = LLMOrchestrator(MockLLMProvider({"sentiment": {"overall": "ecstatic", "score": 5}}))
    handler = build_stage_handlers(stt=MockSTTProvider(), llm=llm)[StageName.sentiment]
    meeting_factory("m-1")
    task, ctx = _claimed(spec_factory, StageName.sentiment, "m-1", {"transcript": TRANSCRIPT})

    with pytest.raises(ProviderError) as exc:
        handler(task, ctx)
    assert exc.value.code == ErrCode.INVALID_RESULT
    assert _meeting("m-1").sentiment is None


def test_analysis_falls_back_to_stored_transcript(handlers, spec_factory, meeting_factory) -> None:
    meeting_factory("m-1")
    with db_session() as s:
        MeetingRepository(s).set_outputs("m-1", transcript={"text": TRANSCRIPT})
    task, ctx = _claimed(spec_factory, StageName.follow_up, "m-1", {})

    result = handlers[StageName.follow_up](task, ctx)

    assert result["follow_ups"] == 1


class _PricedSTT(MockSTTProvider):
    def transcribe(self, *, source):
        return replace(super().transcribe(source=source), cost=0.25)


def test_transcription_rerun_overwrites_cost(spec_factory, meeting_factory, audio_file) -> None:
    handler = build_stage_handlers(stt=_PricedSTT(), llm=LLMOrchestrator(MockLLMProvider()))[
        StageName.transcription
    ]
    meeting_factory("m-1")
    payload = {"source_locator": str(audio_file), "size_bytes": audio_file.stat().st_size}

    for _ in range(2):
        task, ctx = _claimed(spec_factory, StageName.transcription, "m-1", payload)
        handler(task, ctx)

    assert _meeting("m-1").processing_cost == pytest.approx(0.25)

    # стадии анализа докладывают свою стоимость поверх транскрипции
    with db_session() as s:
        MeetingRepository(s).add_cost("m-1", 0.1)
    assert _meeting("m-1").processing_cost == pytest.approx(0.35)


@pytest.mark.parametrize("stage", [StageName.transcription, StageName.extraction])
def test_cancelled_meeting_drops_task(spec_factory, meeting_factory, audio_file, stage) -> None:
    llm = MockLLMProvider()
    handler = build_stage_handlers(stt=MockSTTProvider(), llm=LLMOrchestrator(llm))[stage]
    meeting_factory("m-1")
    with db_session() as s:
        MeetingRepository(s).advance_status("m-1", MeetingStatus.cancelled)
    q = InMemoryStageQueue(spec_factory(stage))
    q.enqueue(
        Task.for_stage(
            stage,
            "m-1",
            {
                "source_locator": str(audio_file),
                "size_bytes": audio_file.stat().st_size,
                "transcript": TRANSCRIPT,
            },
        )
    )

    assert StageWorker(q, handler, poll_interval_sec=0.01, heartbeat_interval_sec=0.05).run_once()

    assert q.get_task(f"{stage.value}:m-1") is None
    assert llm.calls == []
    m = _meeting("m-1")
    assert m.status == MeetingStatus.cancelled
    assert m.transcript is None
    assert m.action_items is None


def test_cancel_from_handler_flags_own_task(spec_factory, meeting_factory) -> None:
    meeting_factory("m-1")
    task, ctx = _claimed(spec_factory, StageName.sentiment, "m-1", {"transcript": TRANSCRIPT})

    with pytest.raises(TaskCancelled):
        ctx.cancel("Meeting m-1 cancelled")

    assert ctx.queue.get_task(task.id).cancel_requested is True
