"""
STT через OpenAI-compatible endpoint (/audio/transcriptions, Whisper API).

Ответ запрашивается в verbose_json: текст, сегменты, длительность, язык.
Стоимость считается поминутно (WHISPER_COST_PER_MINUTE).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.errors import ErrCode, ProviderError
from meeting_pipeline.common.logging import get_project_logger

from .base import AudioSource, STTProvider, TranscriptionResult, TranscriptSegment, whisper_cost

log = get_project_logger()


@dataclass
class OpenAISTTConfig:
    api_base: str
    api_key: str
    model: str = "whisper-1"
    language: str | None = None
    timeout_s: int = 300
    cost_per_minute: float = 0.006


class OpenAICompatSTTProvider(STTProvider):
    """Распознавание всей записи одним запросом."""

    def __init__(self) -> None:
        s = get_settings()
        api_base = s.openai_api_base or ""
        api_key = s.openai_api_key or ""
        if not api_base:
            raise ProviderError(ErrCode.STT_PROVIDER_ERROR, "OPENAI_API_BASE не задан")
        if not api_key:
            raise ProviderError(ErrCode.STT_PROVIDER_ERROR, "OPENAI_API_KEY не задан")

        self.cfg = OpenAISTTConfig(
            api_base=api_base,
            api_key=api_key,
            model=s.whisper_model or "whisper-1",
            language=s.whisper_language,
            timeout_s=max(30, int(s.transcription_timeout_sec)),
            cost_per_minute=float(s.whisper_cost_per_minute),
        )

    def transcribe(self, *, source: AudioSource) -> TranscriptionResult:
        url = self.cfg.api_base.rstrip("/") + "/audio/transcriptions"
        headers = {"Authorization": f"Bearer {self.cfg.api_key}"}
        form: dict[str, Any] = {
            "model": self.cfg.model,
            "response_format": "verbose_json",
            "temperature": "0",
        }
        if self.cfg.language:
            form["language"] = self.cfg.language

        try:
            resp = requests.post(
                url,
                headers=headers,
                data=form,
                files={"file": (source.filename, source.data)},
                timeout=self.cfg.timeout_s,
            )
        except requests.RequestException as e:
            log.error(
                "stt_http_error",
                extra={"payload": {"provider": "openai_compat", "err": str(e)[:200]}},
            )
            raise ProviderError(
                ErrCode.STT_PROVIDER_ERROR,
                "Ошибка HTTP при вызове STT",
                {"err": str(e)[:200]},
            ) from e

        if resp.status_code >= 400:
            raise ProviderError(
                ErrCode.STT_PROVIDER_ERROR,
                "STT вернул ошибку",
                {"status": resp.status_code, "text_head": resp.text[:500]},
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(
                ErrCode.STT_PROVIDER_ERROR,
                "STT вернул невалидный JSON",
                {"err": str(e), "text_head": resp.text[:500]},
            ) from e

        return self._parse(data)

    def _parse(self, data: dict[str, Any]) -> TranscriptionResult:
        segments = []
        for seg in data.get("segments") or []:
            no_speech = seg.get("no_speech_prob")
            segments.append(
                TranscriptSegment(
                    text=str(seg.get("text") or "").strip(),
                    start_sec=float(seg.get("start") or 0.0),
                    end_sec=float(seg["end"]) if seg.get("end") is not None else None,
                    confidence=round(1 - float(no_speech), 4) if no_speech is not None else None,
                )
            )
        duration = float(data.get("duration") or 0.0)
        return TranscriptionResult(
            text=str(data.get("text") or "").strip(),
            segments=segments,
            duration_sec=duration,
            language=data.get("language") or self.cfg.language,
            cost=whisper_cost(duration, self.cfg.cost_per_minute),
            model=self.cfg.model,
        )
