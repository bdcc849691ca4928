"""
Базовые типы для LLM.

- единый контракт провайдера (complete_text)
- результат генерации с usage (для учёта стоимости)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class LLMResult:
    """
    Результат генерации LLM.
    """

    text: str
    model: str | None = None
    usage: dict[str, Any] | None = None

    @property
    def total_tokens(self) -> int:
        usage = self.usage or {}
        total = usage.get("total_tokens")
        if total is None:
            total = int(usage.get("prompt_tokens") or 0) + int(usage.get("completion_tokens") or 0)
        return int(total or 0)


class LLMProvider(ABC):
    """
    Интерфейс провайдера LLM.
    """

    @abstractmethod
    def complete_text(self, *, system: str, user: str) -> LLMResult:
        """
        Сгенерировать ответ на пару system/user.
        """
        raise NotImplementedError
