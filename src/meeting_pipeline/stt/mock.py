from __future__ import annotations

from meeting_pipeline.stt.base import (
    AudioSource,
    STTProvider,
    TranscriptionResult,
    TranscriptSegment,
)

_MOCK_LINES = (
    ("Speaker 1", "Good morning everyone. Let's get started with today's standup meeting."),
    ("Speaker 2", "Yesterday I completed the authentication module and deployed it to staging."),
    ("Speaker 2", "Today I'm working on the payment integration."),
    ("Speaker 2", "I'm facing some challenges with the webhook validation. Might need help."),
    ("Speaker 1", "Let's decide to ship the payment feature next sprint."),
    ("Speaker 1", "Alex will send the webhook spec by Friday."),
)


class MockSTTProvider(STTProvider):
    """Заглушка STT: возвращает предсказуемый текст для проверки пайплайна end-to-end."""

    def transcribe(self, *, source: AudioSource) -> TranscriptionResult:
        segments = []
        for idx, (speaker, text) in enumerate(_MOCK_LINES):
            segments.append(
                TranscriptSegment(
                    text=text,
                    start_sec=idx * 5.0,
                    end_sec=idx * 5.0 + 4.5,
                    confidence=0.95,
                    speaker=speaker,
                )
            )
        return TranscriptionResult(
            text=" ".join(s.text for s in segments),
            segments=segments,
            duration_sec=len(segments) * 5.0,
            language="en",
            cost=0.0,
            model="mock-whisper",
        )
