"""
Reconciliation job.

Назначение:
- stall-sweep: активные задачи без heartbeat возвращаются в waiting (или в failed)
- перевод отложенных (delayed) задач в waiting по наступлению срока
- retention: чистка completed/failed задач по количеству и возрасту
- досылка потерянных событий оркестратору (orchestrator.reconcile)
"""

from __future__ import annotations

from dataclasses import dataclass, field

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.domain.enums import TaskState
from meeting_pipeline.services.orchestrator import ReconcileReport
from meeting_pipeline.services.pipeline_service import Pipeline, get_pipeline

log = get_project_logger()


@dataclass
class ReconciliationResult:
    stalled: int = 0
    promoted: int = 0
    cleaned: int = 0
    queue_errors: dict[str, str] = field(default_factory=dict)
    report: ReconcileReport | None = None


def _sweep_queues(pipeline: Pipeline, result: ReconciliationResult) -> None:
    s = get_settings()
    for stage, queue in pipeline.queues.items():
        try:
            result.stalled += queue.requeue_stalled()
            result.promoted += queue.promote_delayed()
            result.cleaned += queue.clean(
                TaskState.completed,
                keep_last=queue.spec.keep_completed,
                max_age_sec=s.queue_clean_max_age_sec,
            )
            result.cleaned += queue.clean(
                TaskState.failed,
                keep_last=queue.spec.keep_failed,
                max_age_sec=s.queue_clean_max_age_sec,
            )
        except Exception as e:
            result.queue_errors[stage.value] = str(e)[:300]
            log.warning(
                "reconciliation_queue_sweep_failed",
                extra={"payload": {"stage": stage.value, "err": str(e)[:300]}},
            )


def run(*, limit: int | None = None, pipeline: Pipeline | None = None) -> ReconciliationResult | None:
    settings = get_settings()
    if not settings.reconciliation_enabled:
        log.info("reconciliation_job_skipped", extra={"payload": {"reason": "disabled"}})
        return None

    reconcile_limit = int(limit if limit is not None else settings.reconciliation_limit)
    log.info("reconciliation_job_started", extra={"payload": {"limit": reconcile_limit}})

    p = pipeline or get_pipeline()
    result = ReconciliationResult()
    _sweep_queues(p, result)
    result.report = p.orchestrator.reconcile(limit=max(1, reconcile_limit))

    log.info(
        "reconciliation_job_finished",
        extra={
            "payload": {
                "stalled": result.stalled,
                "promoted": result.promoted,
                "cleaned": result.cleaned,
                "queue_errors": len(result.queue_errors),
                "scanned": result.report.scanned,
                "replayed_entry": result.report.replayed_entry,
                "replayed_stages": result.report.replayed_stages,
                "requeued": result.report.requeued,
            }
        },
    )
    return result
