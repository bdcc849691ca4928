"""
Утилиты времени.

Назначение:
- единый формат времени (ISO UTC)
- epoch-секунды для очередей (score в Redis ZSET)
"""

from __future__ import annotations

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """
    Текущее время в UTC в ISO формате.
    """
    return utc_now().isoformat()


def epoch_s() -> float:
    """
    Текущее время (unix epoch, секунды с дробной частью).
    """
    return time.time()


def epoch_to_iso(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, UTC).isoformat()
