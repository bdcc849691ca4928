"""
Репозитории (DAO слой).

Правила:
- Никакой бизнес-логики
- Только CRUD, запросы и условные (CAS) обновления
- Общие поля встречи (status, outstanding_stages, processing_*) меняются
  только атомарным UPDATE ... WHERE, без read-modify-write
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from meeting_pipeline.common.metrics import record_transition
from meeting_pipeline.common.time import utc_now
from meeting_pipeline.domain.enums import MeetingStatus, StageName, StageRunState
from meeting_pipeline.domain.stages import StageSpec
from meeting_pipeline.domain.state_machine import allowed_from

from .models import Meeting, MeetingStageRun

# Поля выходов стадий: полная перезапись по meeting_id
STAGE_OUTPUT_FIELDS = frozenset(
    {
        "transcript",
        "participants",
        "action_items",
        "decisions",
        "sentiment",
        "participant_sentiment",
        "follow_ups",
        "timeline",
    }
)


# =============================================================================
# MEETING REPOSITORY
# =============================================================================
class MeetingRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, meeting_id: str) -> Meeting | None:
        return self.session.get(Meeting, meeting_id)

    def ensure(
        self,
        *,
        meeting_id: str,
        title: str | None = None,
        requester_id: str | None = None,
        participants: list | None = None,
    ) -> Meeting:
        """Гарантирует, что Meeting существует.
        Идемпотентно: если уже есть: вернёт существующий.
        """
        m = self.get(meeting_id)
        if m:
            return m

        m = Meeting(
            id=meeting_id,
            title=(title or "")[:200],
            requester_id=requester_id,
            status=MeetingStatus.scheduled,
            participants=list(participants or []),
        )
        self.session.add(m)
        self.session.flush()
        return m

    def save(self, meeting: Meeting) -> None:
        self.session.add(meeting)

    def set_source(self, meeting_id: str, *, source_locator: str, size_bytes: int) -> None:
        self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id)
            .values(source_locator=source_locator, size_bytes=int(size_bytes))
        )

    # -------------------------------------------------------------------------
    # status (CAS)
    # -------------------------------------------------------------------------
    def advance_status(
        self,
        meeting_id: str,
        target: MeetingStatus,
        *,
        allowed: Iterable[MeetingStatus] | None = None,
        **values,
    ) -> bool:
        """
        Условный переход статуса: сработает, только если текущий статус
        входит в разрешённые источники. Возвращает True, если строка обновлена.
        """
        sources = list(allowed if allowed is not None else allowed_from(target))
        res = self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id, Meeting.status.in_(sources))
            .values(status=target, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        ok = res.rowcount == 1
        if ok:
            record_transition(target.value)
        return ok

    # -------------------------------------------------------------------------
    # stage outputs / processing meta
    # -------------------------------------------------------------------------
    def set_outputs(self, meeting_id: str, **fields) -> bool:
        unknown = set(fields) - STAGE_OUTPUT_FIELDS
        if unknown:
            raise ValueError(f"unknown stage output fields: {sorted(unknown)}")
        res = self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id)
            .values(updated_at=utc_now(), **fields)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def mark_started(self, meeting_id: str, at: datetime | None = None) -> bool:
        """processing_started_at ставится один раз за прогон."""
        res = self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id, Meeting.processing_started_at.is_(None))
            .values(processing_started_at=at or utc_now())
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def set_cost(self, meeting_id: str, cost: float, *, model: str | None = None) -> None:
        """Стоимость транскрипции: начало прогона, перезапуск стадии не удваивает её."""
        values: dict = {"processing_cost": float(cost or 0.0)}
        if model:
            values["processing_model"] = model
        self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def add_cost(self, meeting_id: str, cost: float, *, model: str | None = None) -> None:
        values: dict = {"processing_cost": Meeting.processing_cost + float(cost or 0.0)}
        if model:
            values["processing_model"] = model
        self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def note_error(self, meeting_id: str, error: str) -> bool:
        """processing_error пишется не больше одного раза за прогон."""
        res = self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id, Meeting.processing_error.is_(None))
            .values(processing_error=(error or "")[:2000])
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def clear_error(self, meeting_id: str) -> None:
        self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id)
            .values(processing_error=None)
            .execution_options(synchronize_session=False)
        )

    # -------------------------------------------------------------------------
    # fan-in
    # -------------------------------------------------------------------------
    def init_fan_in(self, meeting_id: str, specs: Iterable[StageSpec]) -> int:
        """
        Заводит строки стадий текущего прогона и счётчик обязательных стадий.
        Повторный вызов не дублирует строки.
        """
        specs = list(specs)
        existing = {
            r.stage
            for r in self.session.scalars(
                select(MeetingStageRun).where(MeetingStageRun.meeting_id == meeting_id)
            )
        }
        for spec in specs:
            if spec.name in existing:
                continue
            self.session.add(
                MeetingStageRun(
                    meeting_id=meeting_id,
                    stage=spec.name,
                    state=StageRunState.queued,
                    required=spec.required,
                )
            )
        outstanding = sum(1 for s in specs if s.required)
        self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id)
            .values(outstanding_stages=outstanding)
            .execution_options(synchronize_session=False)
        )
        self.session.flush()
        return outstanding

    def finish_stage_run(
        self,
        meeting_id: str,
        stage: StageName,
        state: StageRunState,
        *,
        failure_reason: str | None = None,
    ) -> bool:
        """
        queued -> completed/failed. False: строки нет или стадия уже отмечена
        (дубликат callback'а).
        """
        res = self.session.execute(
            update(MeetingStageRun)
            .where(
                MeetingStageRun.meeting_id == meeting_id,
                MeetingStageRun.stage == stage,
                MeetingStageRun.state == StageRunState.queued,
            )
            .values(state=state, failure_reason=failure_reason, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def decrement_outstanding(self, meeting_id: str) -> int | None:
        """
        Атомарный декремент счётчика fan-in. Возвращает новое значение
        (None, если счётчик уже был 0). Строка остаётся заблокированной
        до конца транзакции, поэтому прочитанное значение: наше.
        """
        res = self.session.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id, Meeting.outstanding_stages > 0)
            .values(outstanding_stages=Meeting.outstanding_stages - 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            return None
        return self.session.scalar(
            select(Meeting.outstanding_stages).where(Meeting.id == meeting_id)
        )

    def list_stage_runs(self, meeting_id: str) -> list[MeetingStageRun]:
        return list(
            self.session.scalars(
                select(MeetingStageRun)
                .where(MeetingStageRun.meeting_id == meeting_id)
                .order_by(MeetingStageRun.id)
            )
        )

    # -------------------------------------------------------------------------
    # restart / reconciliation
    # -------------------------------------------------------------------------
    def reset_for_restart(self, meeting_id: str) -> bool:
        """
        Явный перезапуск: выходы стадий, processing meta и учёт fan-in
        очищаются, статус -> scheduled (только из терминальных статусов).
        """
        ok = self.advance_status(
            meeting_id,
            MeetingStatus.scheduled,
            transcript=None,
            action_items=None,
            decisions=None,
            sentiment=None,
            participant_sentiment=None,
            follow_ups=None,
            timeline=None,
            processing_started_at=None,
            processing_completed_at=None,
            processing_cost=0.0,
            processing_model=None,
            processing_error=None,
            outstanding_stages=0,
        )
        if not ok:
            return False
        self.session.execute(
            delete(MeetingStageRun)
            .where(MeetingStageRun.meeting_id == meeting_id)
            .execution_options(synchronize_session=False)
        )
        return True

    def list_by_status(self, statuses: Iterable[MeetingStatus], *, limit: int = 200) -> list[str]:
        return list(
            self.session.scalars(
                select(Meeting.id)
                .where(Meeting.status.in_(list(statuses)))
                .order_by(Meeting.updated_at)
                .limit(max(1, min(int(limit), 5000)))
            )
        )
