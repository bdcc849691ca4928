"""
Генерация идентификаторов.

Назначение:
- meeting_id / event_id
- детерминированный id задачи стадии (ключ идемпотентности)
- lease-токены для активных задач
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime


def new_event_id(prefix: str = "evt") -> str:
    """
    Идентификатор события (лог/очереди/трассировка).
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(6)
    return f"{prefix}_{ts}_{rnd}"


def new_meeting_id(prefix: str = "mtg") -> str:
    """
    Идентификатор встречи.
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(5)
    return f"{prefix}_{ts}_{rnd}"


def stage_task_id(stage: str, meeting_id: str) -> str:
    """
    Id задачи стадии: "<stage>:<meeting_id>".
    Один и тот же вход всегда даёт один и тот же id, на этом держится дедуп.
    """
    stage_value = getattr(stage, "value", stage)
    return f"{stage_value}:{meeting_id}"


def new_lease_token() -> str:
    """Токен аренды активной задачи (выдаётся при claim)."""
    return secrets.token_hex(12)
