"""
Выбор STT-провайдера по STT_PROVIDER (mock|openai|whisper_local).

Провайдер создаётся лениво, один раз на процесс: локальная модель тяжёлая.
"""

from __future__ import annotations

import threading

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.logging import get_project_logger

from .base import STTProvider
from .mock import MockSTTProvider

log = get_project_logger()

_provider: STTProvider | None = None
_lock = threading.Lock()


def build_stt_provider() -> STTProvider:
    s = get_settings()
    provider = (s.stt_provider or "").strip().lower()

    if provider == "mock":
        return MockSTTProvider()
    if provider == "openai":
        from meeting_pipeline.stt.openai_compat import OpenAICompatSTTProvider

        return OpenAICompatSTTProvider()

    from meeting_pipeline.stt.whisper_local import WhisperLocalProvider

    return WhisperLocalProvider(
        model_size=s.whisper_model_size,
        device=s.whisper_device,
        compute_type=s.whisper_compute_type,
        language=s.whisper_language,
        vad_filter=s.whisper_vad_filter,
        beam_size=s.whisper_beam_size,
    )


def get_stt_provider() -> STTProvider:
    global _provider
    with _lock:
        if _provider is None:
            _provider = build_stt_provider()
            log.info(
                "stt_provider_ready",
                extra={"payload": {"provider": type(_provider).__name__}},
            )
        return _provider
