from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.errors import ErrCode, ProviderError
from meeting_pipeline.common.logging import get_llm_logger

from .base import LLMProvider, LLMResult

log = get_llm_logger()

T = TypeVar("T")


@dataclass
class LLMJsonResult:
    data: dict[str, Any]
    model: str | None
    tokens: int
    cost: float


class LLMOrchestrator:
    """Оркестратор вызовов LLM: ретраи, валидация JSON, единая обработка ошибок.

    Важная идея: здесь нет логики провайдера, только orchestration.
    Провайдер должен иметь метод complete_text(system=..., user=...) -> LLMResult.
    """

    def __init__(self, provider: LLMProvider) -> None:
        self.provider = provider
        s = get_settings()
        self.retries = max(0, int(s.llm_retries))
        self.backoff_ms = max(0, int(s.llm_retry_backoff_ms))
        self.cost_per_1k = float(s.llm_cost_per_1k_tokens)

    def _retry(self, fn: Callable[..., T], **kwargs: Any) -> T:
        last_err: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                return fn(**kwargs)
            except Exception as e:
                last_err = e
                log.warning(
                    "llm_call_failed",
                    extra={"payload": {"attempt": attempt + 1, "err": str(e)[:200]}},
                )
                if attempt >= self.retries:
                    break
                time.sleep(self.backoff_ms / 1000.0)

        raise ProviderError(
            ErrCode.LLM_PROVIDER_ERROR,
            "LLM не ответил после ретраев",
            {"err": str(last_err)},
        ) from last_err

    def complete_text(self, *, system: str, user: str) -> LLMResult:
        return self._retry(self.provider.complete_text, system=system, user=user)

    def complete_json(self, *, system: str, user: str) -> LLMJsonResult:
        """Возвращает распарсенный JSON-объект. Не-JSON ответ: ошибка стадии."""
        res = self.complete_text(system=system, user=user)
        try:
            data = json.loads(_strip_fences(res.text))
        except ValueError as e:
            raise ProviderError(
                ErrCode.INVALID_RESULT,
                "LLM вернул невалидный JSON",
                {"err": str(e), "text_head": res.text[:500]},
            ) from e
        if isinstance(data, list):
            data = {"items": data}
        if not isinstance(data, dict):
            raise ProviderError(
                ErrCode.INVALID_RESULT,
                "LLM вернул JSON неожиданного типа",
                {"type": type(data).__name__},
            )
        tokens = res.total_tokens
        return LLMJsonResult(
            data=data,
            model=res.model,
            tokens=tokens,
            cost=round(tokens / 1000.0 * self.cost_per_1k, 6),
        )


def _strip_fences(text: str) -> str:
    """Иногда модель заворачивает JSON в ```json ... ```."""
    raw = (text or "").strip()
    if raw.startswith("```"):
        raw = raw.strip("`")
        if raw.lower().startswith("json"):
            raw = raw[4:]
    return raw.strip()
