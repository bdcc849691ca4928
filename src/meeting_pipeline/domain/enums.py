"""
Доменные перечисления (enum).

Используются во всей системе:
- стадии пайплайна
- состояние задач в очереди стадии
- статус встречи (work-item), который опрашивают клиенты
"""

from __future__ import annotations

import enum


class StageName(str, enum.Enum):
    """
    Стадии обработки записи встречи.
    """

    transcription = "transcription"
    extraction = "extraction"
    sentiment = "sentiment"
    follow_up = "follow_up"
    timeline = "timeline"


class TaskState(str, enum.Enum):
    """
    Состояние задачи в очереди стадии. Меняет только сама очередь.
    """

    waiting = "waiting"
    active = "active"
    delayed = "delayed"
    completed = "completed"
    failed = "failed"


# Незавершённые состояния: в них может быть не больше одной задачи на (stage, meeting)
OPEN_TASK_STATES = frozenset({TaskState.waiting, TaskState.active, TaskState.delayed})
TERMINAL_TASK_STATES = frozenset({TaskState.completed, TaskState.failed})


class MeetingStatus(str, enum.Enum):
    """
    Внешний статус встречи (проекция состояния всех стадий).
    """

    scheduled = "scheduled"
    pending = "pending"
    processing = "processing"
    transcribed = "transcribed"
    completed = "completed"
    cancelled = "cancelled"
    failed = "failed"


class StageRunState(str, enum.Enum):
    """
    Состояние стадии в учёте fan-in (таблица meeting_stage_runs).
    """

    queued = "queued"
    completed = "completed"
    failed = "failed"


class StageEventKind(str, enum.Enum):
    completed = "completed"
    failed = "failed"
