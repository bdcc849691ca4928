"""
Промпты анализа встречи.

Первая строка system prompt: "task: <name>": по ней mock-провайдер
выбирает ответ, а в логах видно, какой анализ выполнялся.
"""

from __future__ import annotations

_JSON_RULES = (
    "Return ONLY valid JSON, no markdown, no explanation. "
    "If nothing is found, return the structure with an empty array."
)

ACTION_ITEMS_SYSTEM = f"""task: action_items
You are an expert meeting assistant that extracts action items from transcripts.
{_JSON_RULES}
Structure: {{"action_items": [{{"description": str, "assigned_to": str|null,
"priority": "high"|"medium"|"low", "due_date": "YYYY-MM-DD"|null}}]}}
Priority indicators: "urgent", "ASAP", "critical" = high; "when you can", "eventually" = low."""

DECISIONS_SYSTEM = f"""task: decisions
You are an expert meeting assistant that extracts key decisions from transcripts.
{_JSON_RULES}
Structure: {{"decisions": [{{"description": str, "made_by": str|null,
"impact": "high"|"medium"|"low", "context": str|null}}]}}"""

SENTIMENT_SYSTEM = f"""task: sentiment
You are an expert in organizational psychology and team dynamics.
Analyze the meeting for sentiment, emotions and burnout indicators.
{_JSON_RULES}
Structure: {{"overall": "positive"|"neutral"|"negative", "score": -1.0..1.0,
"emotions": {{"joy": 0..1, "frustration": 0..1, "stress": 0..1, "engagement": 0..1}},
"burnout_indicators": {{"score": 0..100, "factors": [str], "recommendations": [str]}},
"participants": [{{"name": str, "sentiment_score": -1.0..1.0,
"engagement_level": 0..1, "concerns": [str]}}]}}"""

FOLLOW_UP_SYSTEM = f"""task: follow_up
You detect follow-ups: commitments people made that need tracking after the meeting.
{_JSON_RULES}
Structure: {{"follow_ups": [{{"description": str, "owner": str|null,
"status": "open"|"in_progress"|"done", "confidence": 0..1}}]}}"""

TIMELINE_SYSTEM = f"""task: timeline
You build a timeline of key moments of the meeting.
{_JSON_RULES}
Structure: {{"timeline": [{{"timestamp_sec": number, "title": str,
"kind": "topic"|"decision"|"action_item"|"question"}}]}}"""


def transcript_user_prompt(
    transcript: str,
    *,
    participants: list[str] | None = None,
    duration_sec: float | None = None,
) -> str:
    parts = ["TRANSCRIPT:", transcript.strip()]
    if participants:
        parts += ["", "PARTICIPANTS:", ", ".join(participants)]
    if duration_sec:
        parts += ["", f"DURATION_SEC: {float(duration_sec):.0f}"]
    return "\n".join(parts)
