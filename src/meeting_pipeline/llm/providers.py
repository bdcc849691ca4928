"""
Выбор LLM-провайдера по LLM_PROVIDER (mock|openai).
"""

from __future__ import annotations

from meeting_pipeline.common.config import get_settings

from .base import LLMProvider
from .mock import MockLLMProvider
from .orchestrator import LLMOrchestrator


def build_llm_provider() -> LLMProvider:
    provider = (get_settings().llm_provider or "").strip().lower()
    if provider == "openai":
        from meeting_pipeline.llm.openai_compat import OpenAICompatProvider

        return OpenAICompatProvider()
    return MockLLMProvider()


def build_llm_orchestrator(provider: LLMProvider | None = None) -> LLMOrchestrator:
    return LLMOrchestrator(provider or build_llm_provider())
