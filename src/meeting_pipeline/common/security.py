"""
Утилиты авторизации HTTP API.

Поддерживаемые режимы (AUTH_MODE):
- api_key: проверка X-API-Key (API_KEYS и SERVICE_API_KEYS)
- none   : без авторизации (ТОЛЬКО dev)
"""

from __future__ import annotations

from dataclasses import dataclass

from .config import get_settings
from .errors import UnauthorizedError


def _parse_api_keys(raw: str) -> set[str]:
    """
    Разбор строки API_KEYS из ENV в множество.
    """
    return {k.strip() for k in (raw or "").split(",") if k.strip()}


def _is_prod_env(app_env: str | None) -> bool:
    return (app_env or "").strip().lower() in {"prod", "production"}


@dataclass(frozen=True)
class AuthContext:
    subject: str
    auth_type: str


def require_auth(*, x_api_key: str | None) -> AuthContext:
    settings = get_settings()
    mode = (settings.auth_mode or "api_key").lower().strip()

    if mode == "none":
        if _is_prod_env(settings.app_env):
            raise UnauthorizedError("AUTH_MODE=none запрещён в APP_ENV=prod")
        return AuthContext(subject="anonymous", auth_type="none")

    if mode != "api_key":
        raise UnauthorizedError("Неизвестный режим авторизации")

    user_keys = _parse_api_keys(settings.api_keys)
    service_keys = _parse_api_keys(settings.service_api_keys)
    if not x_api_key or x_api_key not in (user_keys | service_keys):
        raise UnauthorizedError("Неверный API ключ")
    if x_api_key in service_keys:
        return AuthContext(subject="service", auth_type="service_api_key")
    return AuthContext(subject="user", auth_type="user_api_key")
