"""
Базовый интерфейс STT (Speech-to-Text).

Назначение:
- единый контракт для всех провайдеров
- пакетная обработка одной записи встречи целиком
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol


@dataclass
class TranscriptSegment:
    text: str
    start_sec: float
    end_sec: float | None = None
    confidence: float | None = None
    speaker: str | None = None


@dataclass
class TranscriptionResult:
    text: str
    segments: list[TranscriptSegment] = field(default_factory=list)
    duration_sec: float = 0.0
    language: str | None = None
    cost: float = 0.0
    model: str = ""

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AudioSource:
    locator: str
    data: bytes
    filename: str
    format: str


class STTProvider(Protocol):
    def transcribe(self, *, source: AudioSource) -> TranscriptionResult: ...


def whisper_cost(duration_sec: float, cost_per_minute: float) -> float:
    """Стоимость распознавания: поминутный тариф, 4 знака после запятой."""
    minutes = max(0.0, float(duration_sec or 0.0)) / 60.0
    return round(minutes * float(cost_per_minute or 0.0), 4)
