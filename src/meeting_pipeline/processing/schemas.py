"""
Схемы результатов анализа (валидация ответа LLM).

Ответ, не прошедший валидацию, считается ошибкой стадии (ретраится очередью).
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Level = Literal["high", "medium", "low"]


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ActionItem(_Lenient):
    description: str = Field(min_length=1)
    assigned_to: str | None = None
    priority: Level = "medium"
    due_date: str | None = None
    status: Literal["pending", "in-progress", "completed"] = "pending"


class Decision(_Lenient):
    description: str = Field(min_length=1)
    made_by: str | None = None
    impact: Level = "medium"
    context: str | None = None


class ActionItemsResult(_Lenient):
    action_items: list[ActionItem] = Field(default_factory=list)


class DecisionsResult(_Lenient):
    decisions: list[Decision] = Field(default_factory=list)


class Emotions(_Lenient):
    joy: float = Field(default=0.5, ge=0, le=1)
    frustration: float = Field(default=0.5, ge=0, le=1)
    stress: float = Field(default=0.5, ge=0, le=1)
    engagement: float = Field(default=0.5, ge=0, le=1)


class BurnoutIndicators(_Lenient):
    score: float = Field(default=0, ge=0, le=100)
    factors: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ParticipantSentiment(_Lenient):
    name: str = Field(min_length=1)
    sentiment_score: float = Field(default=0, ge=-1, le=1)
    engagement_level: float = Field(default=0.5, ge=0, le=1)
    speaking_time: float | None = None
    concerns: list[str] = Field(default_factory=list)


class SentimentResult(_Lenient):
    overall: Literal["positive", "neutral", "negative"]
    score: float = Field(ge=-1, le=1)
    emotions: Emotions = Field(default_factory=Emotions)
    burnout_indicators: BurnoutIndicators = Field(default_factory=BurnoutIndicators)
    participants: list[ParticipantSentiment] = Field(default_factory=list)


class FollowUp(_Lenient):
    description: str = Field(min_length=1)
    owner: str | None = None
    status: Literal["open", "in_progress", "done"] = "open"
    confidence: float = Field(default=0.5, ge=0, le=1)


class FollowUpResult(_Lenient):
    follow_ups: list[FollowUp] = Field(default_factory=list)


class TimelineEvent(_Lenient):
    timestamp_sec: float = Field(ge=0)
    title: str = Field(min_length=1)
    kind: Literal["topic", "decision", "action_item", "question"] = "topic"


class TimelineResult(_Lenient):
    timeline: list[TimelineEvent] = Field(default_factory=list)
