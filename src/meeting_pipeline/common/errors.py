"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP/очередей/воркеров
- единый стиль исключений по проекту
"""

from __future__ import annotations

from dataclasses import dataclass


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"

    # Провайдеры
    STT_PROVIDER_ERROR = "stt_provider_error"
    LLM_PROVIDER_ERROR = "llm_provider_error"
    INVALID_RESULT = "invalid_result"

    # Пайплайн
    UNSUPPORTED_INPUT = "unsupported_input"
    STAGE_TIMEOUT = "stage_timeout"
    TASK_CANCELLED = "task_cancelled"

    # Инфра/хранилища
    DB_ERROR = "db_error"
    REDIS_ERROR = "redis_error"
    QUEUE_UNAVAILABLE = "queue_unavailable"
    STORAGE_ERROR = "storage_error"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов/PII)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Не авторизован", details: dict | None = None) -> None:
        super().__init__(ErrCode.UNAUTHORIZED, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class ConflictError(AppError):
    def __init__(self, message: str = "Конфликт", details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFLICT, message, details)


class ProviderError(AppError):
    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(code, message, details)


class QueueUnavailableError(AppError):
    """Брокер очереди недоступен: задача не поставлена."""

    def __init__(self, message: str = "Очередь недоступна", details: dict | None = None) -> None:
        super().__init__(ErrCode.QUEUE_UNAVAILABLE, message, details)


class NonRetriableStageError(AppError):
    """
    Ошибка входных данных стадии (неподдерживаемый формат, нет встречи и т.п.).
    Повторять бессмысленно: задача сразу уходит в failed.
    """

    def __init__(
        self, message: str, details: dict | None = None, code: str = ErrCode.UNSUPPORTED_INPUT
    ) -> None:
        super().__init__(code, message, details)


class StageTimeoutError(AppError):
    def __init__(self, message: str = "Превышен таймаут стадии", details: dict | None = None) -> None:
        super().__init__(ErrCode.STAGE_TIMEOUT, message, details)


class TaskCancelled(AppError):
    def __init__(self, message: str = "Задача отменена", details: dict | None = None) -> None:
        super().__init__(ErrCode.TASK_CANCELLED, message, details)
