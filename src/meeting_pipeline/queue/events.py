"""
События завершения стадий.

Очередь публикует StageEvent после того, как переход задачи в completed/failed
реально записан. Оркестратор подписывается на шину и сам решает, что делать
дальше (fan-out, fan-in, failed). Так оркестратор тестируется отдельно от
очередей: достаточно отправить событие в шину.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.domain.enums import StageEventKind, StageName

log = get_project_logger()


@dataclass(frozen=True)
class StageEvent:
    kind: StageEventKind
    stage: StageName
    task_id: str
    meeting_id: str
    attempts: int
    result: dict[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None


StageEventListener = Callable[[StageEvent], None]


class EventBus:
    """
    Синхронная in-process шина.

    Обработчики вызываются в потоке того, кто опубликовал событие (воркер).
    Ошибка обработчика логируется и не возвращается в очередь: переход задачи
    уже записан, а потерянное событие добирает reconciliation.
    """

    def __init__(self) -> None:
        self._listeners: list[StageEventListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: StageEventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def publish(self, event: StageEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                log.error(
                    "stage_event_listener_error",
                    exc_info=True,
                    extra={
                        "payload": {
                            "kind": event.kind.value,
                            "stage": event.stage.value,
                            "task_id": event.task_id,
                            "err": str(e)[:250],
                        }
                    },
                )
