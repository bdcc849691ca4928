"""
Оркестратор пайплайна обработки встречи.

Назначение:
- start_pipeline: ставит входную стадию (транскрипцию)
- по завершении транскрипции веером ставит стадии анализа (fan-out)
- собирает завершение обязательных стадий (fan-in) в итоговый статус встречи
- сводный статус по всем стадиям, отмена, перезапуск, статистика очередей
- reconcile: добирает события, потерянные при падении процесса

Правила:
- статус встречи меняется только CAS-обновлением (repositories.advance_status)
- счётчик fan-in уменьшается атомарным UPDATE, повторный callback стадии: no-op
- required/optional берётся только из PipelineConfig
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from meeting_pipeline.common.errors import ConflictError, NotFoundError, QueueUnavailableError
from meeting_pipeline.common.ids import stage_task_id
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.common.time import utc_now
from meeting_pipeline.domain.enums import (
    MeetingStatus,
    StageEventKind,
    StageName,
    StageRunState,
    TaskState,
)
from meeting_pipeline.domain.stages import PipelineConfig, StageSpec
from meeting_pipeline.domain.state_machine import (
    TERMINAL_STATUSES,
    describe_status,
    project_status,
)
from meeting_pipeline.queue.base import EnqueueResult, StageQueue
from meeting_pipeline.queue.events import EventBus, StageEvent
from meeting_pipeline.queue.tasks import AnalysisPayload, Task, TranscriptionPayload
from meeting_pipeline.storage.db import db_session
from meeting_pipeline.storage.repositories import MeetingRepository

log = get_project_logger()

CANCELLED_BY_USER = "Pipeline cancelled by user"

_STARTABLE = frozenset({MeetingStatus.scheduled, MeetingStatus.pending, MeetingStatus.processing})
_IN_FLIGHT = (MeetingStatus.pending, MeetingStatus.processing, MeetingStatus.transcribed)


@dataclass
class ReconcileReport:
    scanned: int = 0
    replayed_entry: int = 0
    replayed_stages: int = 0
    requeued: int = 0
    errors: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)


class PipelineOrchestrator:
    def __init__(
        self,
        config: PipelineConfig,
        queues: dict[StageName, StageQueue],
        *,
        bus: EventBus | None = None,
    ) -> None:
        missing = [s.name.value for s in config.all_stages() if s.name not in queues]
        if missing:
            raise ValueError(f"Нет очередей для стадий: {', '.join(missing)}")
        self.config = config
        self.queues = queues
        if bus is not None:
            bus.subscribe(self.handle_event)

    # =========================================================================
    # События очередей
    # =========================================================================
    def handle_event(self, event: StageEvent) -> None:
        if event.kind == StageEventKind.completed:
            self.on_stage_complete(event.stage, event.meeting_id, event.result)
        else:
            self.on_stage_failed(event.stage, event.meeting_id, event.failure_reason or "")

    # =========================================================================
    # Запуск
    # =========================================================================
    def _build_task(self, spec: StageSpec, meeting_id: str, payload: dict[str, Any]) -> Task:
        return Task.for_stage(
            spec.name,
            meeting_id,
            payload,
            priority=spec.priority,
            max_attempts=spec.max_attempts,
        )

    def start_pipeline(
        self,
        meeting_id: str,
        source_locator: str,
        size_bytes: int,
        requester_id: str | None = None,
    ) -> EnqueueResult:
        with db_session() as session:
            repo = MeetingRepository(session)
            m = repo.get(meeting_id)
            if m is None:
                raise NotFoundError("Встреча не найдена", details={"meeting_id": meeting_id})
            if m.status not in _STARTABLE:
                raise ConflictError(
                    "Пайплайн уже обработан, используйте restart",
                    details={"meeting_id": meeting_id, "status": m.status.value},
                )
            requester_id = requester_id or m.requester_id
            repo.set_source(meeting_id, source_locator=source_locator, size_bytes=size_bytes)

        entry = self.config.entry
        task = self._build_task(
            entry,
            meeting_id,
            asdict(
                TranscriptionPayload(
                    source_locator=source_locator,
                    size_bytes=int(size_bytes),
                    requester_id=requester_id,
                )
            ),
        )
        # QueueUnavailableError уходит вызывающему: статус не трогаем
        result = self.queues[entry.name].enqueue(task)

        with db_session() as session:
            MeetingRepository(session).advance_status(meeting_id, MeetingStatus.pending)

        log.info(
            "pipeline_started",
            extra={
                "payload": {
                    "meeting_id": meeting_id,
                    "task_id": result.task.id,
                    "created": result.created,
                    "size_bytes": int(size_bytes),
                }
            },
        )
        return result

    # =========================================================================
    # Завершение стадий
    # =========================================================================
    def on_stage_complete(
        self, stage: StageName, meeting_id: str, output: dict[str, Any] | None = None
    ) -> None:
        if stage == self.config.entry.name:
            self._on_entry_complete(meeting_id)
            return

        spec = self.config.stages.get(stage)
        if spec is None:
            log.warning(
                "stage_not_configured",
                extra={"payload": {"stage": stage.value, "meeting_id": meeting_id}},
            )
            return

        with db_session() as session:
            repo = MeetingRepository(session)
            if not repo.finish_stage_run(meeting_id, stage, StageRunState.completed):
                log.info(
                    "stage_complete_duplicate",
                    extra={"payload": {"stage": stage.value, "meeting_id": meeting_id}},
                )
                return
            if not spec.required:
                log.info(
                    "optional_stage_completed",
                    extra={"payload": {"stage": stage.value, "meeting_id": meeting_id}},
                )
                return

            left = repo.decrement_outstanding(meeting_id)
            log.info(
                "stage_completed",
                extra={
                    "payload": {
                        "stage": stage.value,
                        "meeting_id": meeting_id,
                        "outstanding": left,
                    }
                },
            )
            if left == 0:
                self._complete_pipeline(repo, meeting_id)

    def _complete_pipeline(self, repo: MeetingRepository, meeting_id: str) -> None:
        if repo.advance_status(
            meeting_id, MeetingStatus.completed, processing_completed_at=utc_now()
        ):
            log.info("pipeline_completed", extra={"payload": {"meeting_id": meeting_id}})

    def _on_entry_complete(self, meeting_id: str) -> None:
        fan_out = self.config.fan_out()
        with db_session() as session:
            repo = MeetingRepository(session)
            m = repo.get(meeting_id)
            if m is None:
                log.warning(
                    "entry_complete_unknown_meeting", extra={"payload": {"meeting_id": meeting_id}}
                )
                return
            if not repo.advance_status(meeting_id, MeetingStatus.transcribed):
                log.info(
                    "entry_complete_ignored",
                    extra={"payload": {"meeting_id": meeting_id, "status": m.status.value}},
                )
                return
            outstanding = repo.init_fan_in(meeting_id, fan_out)
            payload = self._analysis_payload(m)
            if outstanding == 0:
                self._complete_pipeline(repo, meeting_id)

        log.info(
            "pipeline_transcribed",
            extra={"payload": {"meeting_id": meeting_id, "required_stages": outstanding}},
        )
        self._fan_out(meeting_id, fan_out, payload)

        # cancel_pipeline мог пройти между переходом в transcribed и постановкой задач
        with db_session() as session:
            m = MeetingRepository(session).get(meeting_id)
            cancelled = m is not None and m.status == MeetingStatus.cancelled
        if cancelled:
            tasks = self._cancel_tasks(meeting_id)
            log.info(
                "fan_out_cancelled",
                extra={"payload": {"meeting_id": meeting_id, "tasks": tasks}},
            )

    @staticmethod
    def _analysis_payload(m) -> dict[str, Any]:
        transcript = dict(m.transcript or {})
        names = []
        for p in m.participants or []:
            name = p.get("name") if isinstance(p, dict) else p
            if name:
                names.append(str(name))
        return asdict(
            AnalysisPayload(
                transcript=transcript.get("text") or "",
                requester_id=m.requester_id,
                participants=names,
                duration_sec=transcript.get("duration_sec"),
            )
        )

    def _fan_out(
        self, meeting_id: str, specs: list[StageSpec], payload: dict[str, Any]
    ) -> list[StageName]:
        """Порядок постановки фиксирован (FAN_OUT_ORDER). Ошибка одной стадии не мешает остальным."""
        enqueued: list[StageName] = []
        for spec in specs:
            try:
                self.queues[spec.name].enqueue(self._build_task(spec, meeting_id, payload))
                enqueued.append(spec.name)
            except QueueUnavailableError as e:
                log.error(
                    "fan_out_enqueue_failed",
                    extra={
                        "payload": {
                            "meeting_id": meeting_id,
                            "stage": spec.name.value,
                            "err": e.message,
                        }
                    },
                )
                with db_session() as session:
                    MeetingRepository(session).note_error(
                        meeting_id, f"Fan-out enqueue failed: {spec.name.value}"
                    )
        return enqueued

    def on_stage_failed(self, stage: StageName, meeting_id: str, reason: str) -> None:
        now = utc_now()
        if stage == self.config.entry.name:
            with db_session() as session:
                ok = MeetingRepository(session).advance_status(
                    meeting_id,
                    MeetingStatus.failed,
                    processing_error=reason or "Transcription failed",
                    processing_completed_at=now,
                )
            self._log_failed(stage, meeting_id, reason, pipeline_failed=ok)
            return

        spec = self.config.stages.get(stage)
        if spec is None:
            return

        with db_session() as session:
            repo = MeetingRepository(session)
            if not repo.finish_stage_run(
                meeting_id, stage, StageRunState.failed, failure_reason=reason
            ):
                log.info(
                    "stage_failed_duplicate",
                    extra={"payload": {"stage": stage.value, "meeting_id": meeting_id}},
                )
                return
            ok = False
            if spec.required:
                ok = repo.advance_status(
                    meeting_id,
                    MeetingStatus.failed,
                    processing_error=f"{stage.value} failed: {reason}",
                    processing_completed_at=now,
                )
        self._log_failed(stage, meeting_id, reason, pipeline_failed=ok, required=spec.required)

    @staticmethod
    def _log_failed(
        stage: StageName,
        meeting_id: str,
        reason: str,
        *,
        pipeline_failed: bool,
        required: bool = True,
    ) -> None:
        payload = {
            "stage": stage.value,
            "meeting_id": meeting_id,
            "required": required,
            "reason": (reason or "")[:250],
        }
        if pipeline_failed:
            log.error("pipeline_failed", extra={"payload": payload})
        else:
            log.warning("stage_failed", extra={"payload": payload})

    # =========================================================================
    # Статус
    # =========================================================================
    def get_pipeline_status(self, meeting_id: str) -> dict[str, Any]:
        with db_session() as session:
            m = MeetingRepository(session).get(meeting_id)
            if m is None:
                raise NotFoundError("Встреча не найдена", details={"meeting_id": meeting_id})
            status = m.status
            meta = m.processing_meta()

        stages: dict[str, dict[str, Any]] = {}
        progress: dict[StageName, int] = {}
        for spec in self.config.all_stages():
            task_id = stage_task_id(spec.name, meeting_id)
            try:
                st = self.queues[spec.name].get_status(task_id)
            except Exception as e:
                log.warning(
                    "stage_status_unavailable",
                    extra={
                        "payload": {"stage": spec.name.value, "task_id": task_id, "err": str(e)[:200]}
                    },
                )
                stages[spec.name.value] = {
                    "state": "unknown",
                    "progress": 0,
                    "attempts": 0,
                    "failure_reason": None,
                    "required": spec.required,
                }
                continue

            if st is None:
                placeholder = "cancelled" if status == MeetingStatus.cancelled else "pending"
                stages[spec.name.value] = {
                    "state": placeholder,
                    "progress": 0,
                    "attempts": 0,
                    "failure_reason": None,
                    "required": spec.required,
                }
                continue

            progress[spec.name] = int(st.get("progress") or 0)
            stages[spec.name.value] = {
                "state": st["state"],
                "progress": progress[spec.name],
                "attempts": st.get("attempts", 0),
                "failure_reason": st.get("failure_reason"),
                "required": spec.required,
            }

        view = describe_status(self.config, status, progress)
        return {
            "meeting_id": meeting_id,
            "status": status.value,
            "overall_progress": view.overall_progress,
            "status_message": view.message,
            "stages": stages,
            "processing_meta": meta,
        }

    def get_queue_stats(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        total = 0
        for spec in self.config.all_stages():
            try:
                stats = self.queues[spec.name].get_stats()
            except Exception as e:
                log.warning(
                    "queue_stats_unavailable",
                    extra={"payload": {"stage": spec.name.value, "err": str(e)[:200]}},
                )
                out[spec.name.value] = {"error": "unavailable"}
                continue
            out[spec.name.value] = stats.as_dict()
            total += stats.total
        out["total_jobs"] = total
        return out

    # =========================================================================
    # Отмена / перезапуск
    # =========================================================================
    def _cancel_tasks(self, meeting_id: str) -> dict[str, str]:
        """Best-effort: ошибка одной очереди не мешает остальным."""
        tasks: dict[str, str] = {}
        for spec in self.config.all_stages():
            task_id = stage_task_id(spec.name, meeting_id)
            try:
                res = self.queues[spec.name].cancel(task_id)
            except Exception as e:
                log.warning(
                    "task_cancel_failed",
                    extra={"payload": {"task_id": task_id, "err": str(e)[:200]}},
                )
                tasks[spec.name.value] = "unknown"
                continue
            if res.flagged:
                tasks[spec.name.value] = "flagged"
            elif res.removed:
                tasks[spec.name.value] = "removed"
            else:
                tasks[spec.name.value] = "missing"
        return tasks

    def cancel_pipeline(self, meeting_id: str) -> dict[str, Any]:
        with db_session() as session:
            if MeetingRepository(session).get(meeting_id) is None:
                raise NotFoundError("Встреча не найдена", details={"meeting_id": meeting_id})

        tasks = self._cancel_tasks(meeting_id)

        with db_session() as session:
            changed = MeetingRepository(session).advance_status(
                meeting_id,
                MeetingStatus.cancelled,
                processing_completed_at=utc_now(),
                processing_error=CANCELLED_BY_USER,
            )

        log.info(
            "pipeline_cancelled",
            extra={"payload": {"meeting_id": meeting_id, "changed": changed, "tasks": tasks}},
        )
        return {"meeting_id": meeting_id, "status": MeetingStatus.cancelled.value, "tasks": tasks}

    def restart_pipeline(self, meeting_id: str) -> EnqueueResult:
        """
        Явный перезапуск: незавершённый прогон сначала отменяется,
        затем выходы стадий и processing meta очищаются и пайплайн стартует заново.
        """
        with db_session() as session:
            m = MeetingRepository(session).get(meeting_id)
            if m is None:
                raise NotFoundError("Встреча не найдена", details={"meeting_id": meeting_id})
            if not m.source_locator or m.size_bytes is None:
                raise ConflictError(
                    "У встречи нет исходной записи", details={"meeting_id": meeting_id}
                )
            status = m.status
            source_locator, size_bytes, requester_id = (
                m.source_locator,
                m.size_bytes,
                m.requester_id,
            )

        if status in TERMINAL_STATUSES:
            tasks = self._cancel_tasks(meeting_id)
        else:
            tasks = self.cancel_pipeline(meeting_id)["tasks"]
        with db_session() as session:
            if not MeetingRepository(session).reset_for_restart(meeting_id):
                raise ConflictError(
                    "Не удалось сбросить состояние встречи", details={"meeting_id": meeting_id}
                )
        log.info(
            "pipeline_restart",
            extra={"payload": {"meeting_id": meeting_id, "from": status.value, "tasks": tasks}},
        )
        return self.start_pipeline(meeting_id, source_locator, size_bytes, requester_id)

    # =========================================================================
    # Reconciliation
    # =========================================================================
    def _task_states(self, meeting_id: str) -> dict[StageName, Task | None]:
        return {
            spec.name: self.queues[spec.name].get_task(stage_task_id(spec.name, meeting_id))
            for spec in self.config.all_stages()
        }

    def reconcile(self, limit: int = 200) -> ReconcileReport:
        """
        Добирает потерянные события: завершение транскрипции, завершение/падение
        fan-out стадий, пропавшие fan-out задачи.
        """
        report = ReconcileReport()
        with db_session() as session:
            meeting_ids = MeetingRepository(session).list_by_status(_IN_FLIGHT, limit=limit)

        for meeting_id in meeting_ids:
            report.scanned += 1
            try:
                self._reconcile_one(meeting_id, report)
            except Exception as e:
                report.errors += 1
                log.error(
                    "reconcile_meeting_failed",
                    exc_info=True,
                    extra={"payload": {"meeting_id": meeting_id, "err": str(e)[:250]}},
                )
        log.info(
            "reconcile_done",
            extra={
                "payload": {
                    "scanned": report.scanned,
                    "replayed_entry": report.replayed_entry,
                    "replayed_stages": report.replayed_stages,
                    "requeued": report.requeued,
                    "errors": report.errors,
                }
            },
        )
        return report

    def _reconcile_one(self, meeting_id: str, report: ReconcileReport) -> None:
        tasks = self._task_states(meeting_id)
        states = {name: (t.state if t is not None else None) for name, t in tasks.items()}
        projected = project_status(self.config, states)

        with db_session() as session:
            repo = MeetingRepository(session)
            m = repo.get(meeting_id)
            if m is None:
                return
            status = m.status
            source = (m.source_locator, m.size_bytes, m.requester_id)
            runs = [(r.stage, r.state) for r in repo.list_stage_runs(meeting_id)]
            payload = self._analysis_payload(m)

        entry = self.config.entry
        if status in (MeetingStatus.pending, MeetingStatus.processing):
            entry_task = tasks.get(entry.name)
            if entry_task is None:
                locator, size_bytes, requester_id = source
                if locator and size_bytes is not None:
                    self.queues[entry.name].enqueue(
                        self._build_task(
                            entry,
                            meeting_id,
                            asdict(
                                TranscriptionPayload(
                                    source_locator=locator,
                                    size_bytes=int(size_bytes),
                                    requester_id=requester_id,
                                )
                            ),
                        )
                    )
                    report.requeued += 1
                    report.details.append({"meeting_id": meeting_id, "action": "requeue_entry"})
            elif entry_task.state == TaskState.completed:
                self.on_stage_complete(entry.name, meeting_id, entry_task.result)
                report.replayed_entry += 1
                report.details.append({"meeting_id": meeting_id, "action": "replay_entry"})
            elif entry_task.state == TaskState.failed:
                self.on_stage_failed(entry.name, meeting_id, entry_task.failure_reason or "")
                report.replayed_entry += 1
                report.details.append({"meeting_id": meeting_id, "action": "replay_entry_failed"})
            return

        if status != MeetingStatus.transcribed:
            return

        if projected != status:
            log.info(
                "reconcile_status_drift",
                extra={
                    "payload": {
                        "meeting_id": meeting_id,
                        "status": status.value,
                        "projected": projected.value,
                    }
                },
            )

        missing: list[StageSpec] = []
        for stage, run_state in runs:
            if run_state != StageRunState.queued or stage not in self.config.stages:
                continue
            task = tasks.get(stage)
            if task is None:
                missing.append(self.config.spec(stage))
            elif task.state == TaskState.completed:
                self.on_stage_complete(stage, meeting_id, task.result)
                report.replayed_stages += 1
                report.details.append(
                    {"meeting_id": meeting_id, "action": "replay_stage", "stage": stage.value}
                )
            elif task.state == TaskState.failed:
                self.on_stage_failed(stage, meeting_id, task.failure_reason or "")
                report.replayed_stages += 1
                report.details.append(
                    {"meeting_id": meeting_id, "action": "replay_stage_failed", "stage": stage.value}
                )

        if missing:
            enqueued = self._fan_out(meeting_id, missing, payload)
            report.requeued += len(enqueued)
            for stage in enqueued:
                report.details.append(
                    {"meeting_id": meeting_id, "action": "requeue_stage", "stage": stage.value}
                )
