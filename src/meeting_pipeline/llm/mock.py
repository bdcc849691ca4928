"""
Mock LLM для тестов и dev.

Назначение:
- Быстро гонять пайплайн без реальных вызовов LLM
- Предсказуемый результат по типу анализа (строка "task: <name>" в system prompt)
"""

from __future__ import annotations

import json
import re
from typing import Any

from .base import LLMProvider, LLMResult

_TASK_RE = re.compile(r"^task:\s*(\w+)", re.MULTILINE)

DEFAULT_RESPONSES: dict[str, Any] = {
    "action_items": {
        "action_items": [
            {
                "description": "Send the webhook spec",
                "assigned_to": "Alex",
                "priority": "high",
                "due_date": None,
            }
        ]
    },
    "decisions": {
        "decisions": [
            {
                "description": "Ship the payment feature next sprint",
                "made_by": "Speaker 1",
                "impact": "medium",
                "context": "standup",
            }
        ]
    },
    "sentiment": {
        "overall": "neutral",
        "score": 0.1,
        "emotions": {"joy": 0.4, "frustration": 0.2, "stress": 0.3, "engagement": 0.7},
        "burnout_indicators": {"score": 10, "factors": [], "recommendations": []},
        "participants": [
            {"name": "Speaker 1", "sentiment_score": 0.3, "engagement_level": 0.8, "concerns": []},
            {
                "name": "Speaker 2",
                "sentiment_score": -0.1,
                "engagement_level": 0.6,
                "concerns": ["webhook validation"],
            },
        ],
    },
    "follow_up": {
        "follow_ups": [
            {
                "description": "Help with webhook validation",
                "owner": "Speaker 1",
                "status": "open",
                "confidence": 0.8,
            }
        ]
    },
    "timeline": {
        "timeline": [
            {"timestamp_sec": 0.0, "title": "Standup start", "kind": "topic"},
            {"timestamp_sec": 20.0, "title": "Payment feature decision", "kind": "decision"},
        ]
    },
}


class MockLLMProvider(LLMProvider):
    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = {**DEFAULT_RESPONSES, **(responses or {})}
        self.calls: list[str] = []

    def complete_text(self, *, system: str, user: str) -> LLMResult:
        m = _TASK_RE.search(system or "")
        task = m.group(1) if m else ""
        self.calls.append(task)
        payload = self.responses.get(task, {})
        text = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
        return LLMResult(text=text, model="mock", usage={"total_tokens": 0, "mock": True})
