"""
Вход стадии транскрипции: проверка и чтение аудио.

- формат определяется по расширению (AUDIO_SUPPORTED_FORMATS)
- размер ограничен MAX_AUDIO_SIZE_MB
- источник: локальный путь, file:// или http(s) URL

Ошибки формата/размера/отсутствия файла: NonRetriableStageError:
повторять такую задачу бессмысленно.
"""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlparse

import requests

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.errors import ErrCode, NonRetriableStageError, ProviderError

from .base import AudioSource


def supported_formats() -> list[str]:
    raw = get_settings().audio_supported_formats or ""
    return [p.strip().lower().lstrip(".") for p in raw.split(",") if p.strip()]


def max_size_bytes() -> int:
    return int(get_settings().max_audio_size_mb) * 1024 * 1024


def source_filename(locator: str) -> str:
    parsed = urlparse(locator)
    if parsed.scheme in ("http", "https", "file"):
        return Path(parsed.path).name
    return Path(locator).name


def source_format(locator: str) -> str:
    return Path(source_filename(locator)).suffix.lower().lstrip(".")


def validate_source(locator: str, size_bytes: int | None) -> str:
    """
    Проверка до чтения файла. Возвращает формат (расширение).
    """
    if not (locator or "").strip():
        raise NonRetriableStageError("Не указан источник аудио")

    fmt = source_format(locator)
    allowed = supported_formats()
    if fmt not in allowed:
        raise NonRetriableStageError(
            f"Unsupported format: {fmt or '<none>'}. Supported: {', '.join(allowed)}",
            details={"format": fmt},
        )

    if size_bytes is not None:
        limit = max_size_bytes()
        if int(size_bytes) <= 0:
            raise NonRetriableStageError("Пустой аудиофайл", details={"size_bytes": size_bytes})
        if int(size_bytes) > limit:
            raise NonRetriableStageError(
                f"File too large: {int(size_bytes) / (1024 * 1024):.2f}MB "
                f"(max: {get_settings().max_audio_size_mb}MB)",
                details={"size_bytes": int(size_bytes)},
            )
    return fmt


def read_source(locator: str) -> AudioSource:
    fmt = validate_source(locator, None)
    parsed = urlparse(locator)

    if parsed.scheme in ("http", "https"):
        try:
            resp = requests.get(locator, timeout=get_settings().source_download_timeout_sec)
        except requests.RequestException as e:
            raise ProviderError(
                ErrCode.STORAGE_ERROR, "Не удалось скачать аудио", {"err": str(e)[:200]}
            ) from e
        if resp.status_code == 404:
            raise NonRetriableStageError("Audio file not found", details={"locator": locator})
        if resp.status_code >= 400:
            raise ProviderError(
                ErrCode.STORAGE_ERROR,
                "Не удалось скачать аудио",
                {"status": resp.status_code},
            )
        data = resp.content
    else:
        path = Path(parsed.path if parsed.scheme == "file" else locator)
        if not path.is_file():
            raise NonRetriableStageError("Audio file not found", details={"locator": locator})
        data = path.read_bytes()

    validate_source(locator, len(data))
    return AudioSource(locator=locator, data=data, filename=source_filename(locator), format=fmt)
