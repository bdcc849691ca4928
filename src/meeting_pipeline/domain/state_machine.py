"""
Машина состояний встречи (work-item).

Назначение:
- централизованные правила переходов статуса
- статус не откатывается назад (кроме явной отмены и перезапуска)
- детерминированная проекция статуса из состояний задач стадий
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .enums import MeetingStatus, StageName, TaskState
from .stages import PipelineConfig

# =============================================================================
# ПЕРЕХОДЫ
# =============================================================================
# target -> из каких статусов в него можно прийти
ALLOWED_FROM: dict[MeetingStatus, frozenset[MeetingStatus]] = {
    MeetingStatus.pending: frozenset({MeetingStatus.scheduled}),
    MeetingStatus.processing: frozenset({MeetingStatus.scheduled, MeetingStatus.pending}),
    MeetingStatus.transcribed: frozenset(
        {MeetingStatus.scheduled, MeetingStatus.pending, MeetingStatus.processing}
    ),
    MeetingStatus.completed: frozenset({MeetingStatus.transcribed}),
    MeetingStatus.failed: frozenset(
        {
            MeetingStatus.scheduled,
            MeetingStatus.pending,
            MeetingStatus.processing,
            MeetingStatus.transcribed,
        }
    ),
    # отмена разрешена из любого статуса, повторная отмена: no-op
    MeetingStatus.cancelled: frozenset(set(MeetingStatus) - {MeetingStatus.cancelled}),
    # явный перезапуск (re-submission) сбрасывает состояние
    MeetingStatus.scheduled: frozenset(
        {MeetingStatus.completed, MeetingStatus.failed, MeetingStatus.cancelled}
    ),
}

TERMINAL_STATUSES = frozenset(
    {MeetingStatus.completed, MeetingStatus.failed, MeetingStatus.cancelled}
)


def allowed_from(target: MeetingStatus) -> frozenset[MeetingStatus]:
    return ALLOWED_FROM[target]


def can_transition(current: MeetingStatus, target: MeetingStatus) -> bool:
    return current in ALLOWED_FROM[target]


# =============================================================================
# ПРОЕКЦИЯ
# =============================================================================
@dataclass
class StatusView:
    status: MeetingStatus
    overall_progress: int
    message: str


def project_status(
    config: PipelineConfig,
    states: Mapping[StageName, TaskState | None],
    *,
    cancelled: bool = False,
) -> MeetingStatus:
    """
    Статус встречи из состояний задач стадий (None = задачи нет).

    Required/optional берётся из той же таблицы, что и fan-in оркестратора.
    """
    if cancelled:
        return MeetingStatus.cancelled

    entry_state = states.get(config.entry.name)
    if entry_state is None:
        return MeetingStatus.scheduled
    if entry_state == TaskState.failed:
        return MeetingStatus.failed
    if entry_state in (TaskState.waiting, TaskState.delayed):
        return MeetingStatus.pending
    if entry_state == TaskState.active:
        return MeetingStatus.processing

    required = config.required_fan_out()
    if any(states.get(spec.name) == TaskState.failed for spec in required):
        return MeetingStatus.failed
    if all(states.get(spec.name) == TaskState.completed for spec in required):
        return MeetingStatus.completed
    return MeetingStatus.transcribed


_STATUS_MESSAGES = {
    MeetingStatus.scheduled: "Ready",
    MeetingStatus.pending: "Waiting in queue",
    MeetingStatus.processing: "Transcription in progress",
    MeetingStatus.transcribed: "Analysis in progress",
    MeetingStatus.completed: "All processing completed",
    MeetingStatus.failed: "Processing failed",
    MeetingStatus.cancelled: "Processing cancelled",
}


def describe_status(
    config: PipelineConfig,
    status: MeetingStatus,
    progress: Mapping[StageName, int],
) -> StatusView:
    """
    Общий прогресс 0..100 для клиента.

    Первая половина шкалы за транскрипцией, вторая за обязательными fan-out стадиями.
    """
    if status == MeetingStatus.completed:
        overall = 100
    elif status in (MeetingStatus.scheduled, MeetingStatus.failed, MeetingStatus.cancelled):
        overall = 0
    elif status in (MeetingStatus.pending, MeetingStatus.processing):
        overall = int(progress.get(config.entry.name, 0) or 0) // 2
    else:
        required = config.required_fan_out()
        if required:
            avg = sum(int(progress.get(s.name, 0) or 0) for s in required) / len(required)
        else:
            avg = 100
        overall = 50 + int(avg) // 2
    return StatusView(
        status=status,
        overall_progress=max(0, min(100, overall)),
        message=_STATUS_MESSAGES[status],
    )
