"""
Анализ транскрипта: извлечение, тональность, follow-up, таймлайн.

Каждая функция:
- вызывает LLM через LLMOrchestrator (ретраи + парсинг JSON)
- валидирует ответ pydantic-схемой
- возвращает AnalysisOutput: поля встречи для полной перезаписи + стоимость
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from meeting_pipeline.common.errors import ErrCode, NonRetriableStageError, ProviderError
from meeting_pipeline.common.time import utc_now_iso
from meeting_pipeline.llm.orchestrator import LLMJsonResult, LLMOrchestrator

from . import prompts
from .schemas import (
    ActionItemsResult,
    DecisionsResult,
    FollowUpResult,
    SentimentResult,
    TimelineResult,
)

M = TypeVar("M", bound=BaseModel)


@dataclass
class AnalysisOutput:
    fields: dict[str, Any]
    cost: float = 0.0
    model: str | None = None
    summary: dict[str, Any] = field(default_factory=dict)


def _require_transcript(transcript: str) -> str:
    text = (transcript or "").strip()
    if not text:
        raise NonRetriableStageError("Transcript is empty or invalid", code=ErrCode.VALIDATION)
    return text


def _validate(schema: type[M], res: LLMJsonResult) -> M:
    data = res.data
    if "items" in data and len(data) == 1:
        # LLM вернул голый массив: подставляем под ключ схемы
        key = next(iter(schema.model_fields))
        data = {key: data["items"]}
    try:
        return schema.model_validate(data)
    except PydanticValidationError as e:
        raise ProviderError(
            ErrCode.INVALID_RESULT,
            f"LLM result failed validation: {schema.__name__}",
            {"errors": e.errors()[:5]},
        ) from e


def _ask(
    llm: LLMOrchestrator, system: str, schema: type[M], user: str
) -> tuple[M, LLMJsonResult]:
    res = llm.complete_json(system=system, user=user)
    return _validate(schema, res), res


def extract_items(llm: LLMOrchestrator, transcript: str) -> AnalysisOutput:
    """Action items + решения (два запроса к LLM)."""
    user = prompts.transcript_user_prompt(_require_transcript(transcript))
    items, r1 = _ask(llm, prompts.ACTION_ITEMS_SYSTEM, ActionItemsResult, user)
    decisions, r2 = _ask(llm, prompts.DECISIONS_SYSTEM, DecisionsResult, user)

    now = utc_now_iso()
    action_items = [
        {"id": f"ai_{idx + 1}", **item.model_dump(), "extracted_at": now}
        for idx, item in enumerate(items.action_items)
    ]
    decision_rows = [
        {"id": f"dec_{idx + 1}", **d.model_dump(), "timestamp": now, "extracted_at": now}
        for idx, d in enumerate(decisions.decisions)
    ]
    return AnalysisOutput(
        fields={"action_items": action_items, "decisions": decision_rows},
        cost=r1.cost + r2.cost,
        model=r2.model or r1.model,
        summary={"action_items": len(action_items), "decisions": len(decision_rows)},
    )


def analyze_sentiment(
    llm: LLMOrchestrator, transcript: str, participants: list[str] | None = None
) -> AnalysisOutput:
    user = prompts.transcript_user_prompt(
        _require_transcript(transcript), participants=participants
    )
    result, res = _ask(llm, prompts.SENTIMENT_SYSTEM, SentimentResult, user)
    sentiment = result.model_dump(exclude={"participants"})
    sentiment["analyzed_at"] = utc_now_iso()
    return AnalysisOutput(
        fields={
            "sentiment": sentiment,
            "participant_sentiment": [p.model_dump() for p in result.participants],
        },
        cost=res.cost,
        model=res.model,
        summary={"overall": result.overall, "score": result.score},
    )


def detect_follow_ups(llm: LLMOrchestrator, transcript: str) -> AnalysisOutput:
    user = prompts.transcript_user_prompt(_require_transcript(transcript))
    result, res = _ask(llm, prompts.FOLLOW_UP_SYSTEM, FollowUpResult, user)
    follow_ups = [
        {"id": f"fu_{idx + 1}", **f.model_dump()} for idx, f in enumerate(result.follow_ups)
    ]
    return AnalysisOutput(
        fields={"follow_ups": follow_ups},
        cost=res.cost,
        model=res.model,
        summary={"follow_ups": len(follow_ups)},
    )


def build_timeline(
    llm: LLMOrchestrator, transcript: str, duration_sec: float | None = None
) -> AnalysisOutput:
    user = prompts.transcript_user_prompt(
        _require_transcript(transcript), duration_sec=duration_sec
    )
    result, res = _ask(llm, prompts.TIMELINE_SYSTEM, TimelineResult, user)
    events = sorted(result.timeline, key=lambda e: e.timestamp_sec)
    if duration_sec:
        events = [e for e in events if e.timestamp_sec <= float(duration_sec)]
    return AnalysisOutput(
        fields={"timeline": [e.model_dump() for e in events]},
        cost=res.cost,
        model=res.model,
        summary={"events": len(events)},
    )
