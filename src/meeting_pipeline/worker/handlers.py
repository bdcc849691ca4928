"""
Обработчики стадий пайплайна.

Контракт обработчика: execute(task, ctx) -> dict (результат задачи).
- повторный запуск безопасен: выходы стадии пишутся полной перезаписью по meeting_id
- перед записью результата в БД вызывается ctx.checkpoint()
- оркестрационный учёт (fan-out / fan-in) здесь не делается, этим занимается оркестратор
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from meeting_pipeline.common.errors import ErrCode, NonRetriableStageError
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.domain.enums import MeetingStatus, StageName
from meeting_pipeline.domain.stages import PipelineConfig
from meeting_pipeline.llm.orchestrator import LLMOrchestrator
from meeting_pipeline.llm.providers import build_llm_orchestrator
from meeting_pipeline.processing import analysis
from meeting_pipeline.queue.tasks import Task
from meeting_pipeline.storage.db import db_session
from meeting_pipeline.storage.repositories import MeetingRepository
from meeting_pipeline.stt.audio import read_source, validate_source
from meeting_pipeline.stt.base import STTProvider
from meeting_pipeline.stt.providers import get_stt_provider

from .context import TaskContext
from .stage_worker import StageHandler

log = get_project_logger()


def _meeting_id(task: Task) -> str:
    meeting_id = str(task.payload.get("meeting_id") or task.meeting_id or "")
    if not meeting_id:
        raise NonRetriableStageError("В задаче нет meeting_id", code=ErrCode.VALIDATION)
    return meeting_id


def _require_meeting(meeting_id: str) -> dict[str, Any]:
    with db_session() as session:
        m = MeetingRepository(session).get(meeting_id)
        if m is None:
            raise NonRetriableStageError(
                f"Meeting {meeting_id} not found", code=ErrCode.NOT_FOUND
            )
        return {
            "status": m.status,
            "transcript": dict(m.transcript or {}),
            "participants": list(m.participants or []),
        }


def _participant_names(participants: list) -> list[str]:
    names: list[str] = []
    for p in participants:
        name = p.get("name") if isinstance(p, dict) else p
        if name and str(name) not in names:
            names.append(str(name))
    return names


def _ensure_not_cancelled(meeting_id: str, meeting: dict[str, Any], ctx: TaskContext) -> None:
    if meeting["status"] == MeetingStatus.cancelled:
        ctx.cancel(f"Meeting {meeting_id} cancelled")


def _transcript_text(task: Task, meeting: dict[str, Any]) -> str:
    text = task.payload.get("transcript")
    if not text:
        text = (meeting.get("transcript") or {}).get("text") or ""
    return str(text)


# =============================================================================
# TRANSCRIPTION
# =============================================================================
def make_transcription_handler(stt: STTProvider | None = None) -> StageHandler:
    def execute(task: Task, ctx: TaskContext) -> dict[str, Any]:
        meeting_id = _meeting_id(task)
        meeting = _require_meeting(meeting_id)
        _ensure_not_cancelled(meeting_id, meeting, ctx)
        locator = str(task.payload.get("source_locator") or "")
        size_bytes = task.payload.get("size_bytes")
        validate_source(locator, int(size_bytes) if size_bytes is not None else None)

        with db_session() as session:
            repo = MeetingRepository(session)
            repo.advance_status(meeting_id, MeetingStatus.processing)
            repo.mark_started(meeting_id)
        ctx.report_progress(10)

        source = read_source(locator)
        ctx.report_progress(20)
        ctx.checkpoint()

        provider = stt or get_stt_provider()
        result = provider.transcribe(source=source)
        ctx.report_progress(90)

        speakers = _participant_names(
            [{"name": s.speaker} for s in result.segments if s.speaker]
        )
        ctx.checkpoint()
        with db_session() as session:
            repo = MeetingRepository(session)
            outputs: dict[str, Any] = {"transcript": result.as_dict()}
            if not meeting["participants"] and speakers:
                outputs["participants"] = [{"name": name} for name in speakers]
            repo.set_outputs(meeting_id, **outputs)
            repo.set_cost(meeting_id, result.cost, model=result.model)

        log.info(
            "transcription_done",
            extra={
                "payload": {
                    "meeting_id": meeting_id,
                    "segments": len(result.segments),
                    "duration_sec": result.duration_sec,
                    "cost": result.cost,
                    "model": result.model,
                }
            },
        )
        return {
            "segments": len(result.segments),
            "duration_sec": result.duration_sec,
            "language": result.language,
            "cost": result.cost,
            "model": result.model,
        }

    return execute


# =============================================================================
# ANALYSIS STAGES
# =============================================================================
AnalysisFn = Callable[[LLMOrchestrator, Task, dict[str, Any]], analysis.AnalysisOutput]


def _run_extraction(llm: LLMOrchestrator, task: Task, meeting: dict[str, Any]):
    return analysis.extract_items(llm, _transcript_text(task, meeting))


def _run_sentiment(llm: LLMOrchestrator, task: Task, meeting: dict[str, Any]):
    participants = task.payload.get("participants") or _participant_names(
        meeting["participants"]
    )
    return analysis.analyze_sentiment(llm, _transcript_text(task, meeting), participants)


def _run_follow_up(llm: LLMOrchestrator, task: Task, meeting: dict[str, Any]):
    return analysis.detect_follow_ups(llm, _transcript_text(task, meeting))


def _run_timeline(llm: LLMOrchestrator, task: Task, meeting: dict[str, Any]):
    duration = task.payload.get("duration_sec") or (meeting.get("transcript") or {}).get(
        "duration_sec"
    )
    return analysis.build_timeline(llm, _transcript_text(task, meeting), duration)


def make_analysis_handler(
    stage: StageName, run: AnalysisFn, llm: LLMOrchestrator | None = None
) -> StageHandler:
    def execute(task: Task, ctx: TaskContext) -> dict[str, Any]:
        meeting_id = _meeting_id(task)
        meeting = _require_meeting(meeting_id)
        _ensure_not_cancelled(meeting_id, meeting, ctx)
        ctx.report_progress(10)
        ctx.checkpoint()

        out = run(llm or build_llm_orchestrator(), task, meeting)
        ctx.report_progress(90)

        ctx.checkpoint()
        with db_session() as session:
            repo = MeetingRepository(session)
            repo.set_outputs(meeting_id, **out.fields)
            repo.add_cost(meeting_id, out.cost)

        log.info(
            "analysis_done",
            extra={
                "payload": {
                    "stage": stage.value,
                    "meeting_id": meeting_id,
                    "cost": out.cost,
                    **out.summary,
                }
            },
        )
        return {"cost": out.cost, "model": out.model, **out.summary}

    return execute


# =============================================================================
# REGISTRY
# =============================================================================
def build_stage_handlers(
    *,
    stt: STTProvider | None = None,
    llm: LLMOrchestrator | None = None,
) -> dict[StageName, StageHandler]:
    return {
        StageName.transcription: make_transcription_handler(stt),
        StageName.extraction: make_analysis_handler(StageName.extraction, _run_extraction, llm),
        StageName.sentiment: make_analysis_handler(StageName.sentiment, _run_sentiment, llm),
        StageName.follow_up: make_analysis_handler(StageName.follow_up, _run_follow_up, llm),
        StageName.timeline: make_analysis_handler(StageName.timeline, _run_timeline, llm),
    }


def check_handlers(config: PipelineConfig, handlers: dict[StageName, StageHandler]) -> None:
    missing = [s.name.value for s in config.all_stages() if s.name not in handlers]
    if missing:
        raise RuntimeError(f"Нет обработчиков для стадий: {', '.join(missing)}")
