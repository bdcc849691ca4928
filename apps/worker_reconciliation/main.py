"""
Worker Reconciliation.

Назначение:
- периодический проход по очередям стадий: stall-sweep, delayed -> waiting,
  чистка старых completed/failed задач
- досылка оркестратору событий, потерянных при падении воркеров

--once: один проход и выход (cron / k8s CronJob).
"""

from __future__ import annotations

import argparse
import signal
import threading

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.logging import get_project_logger, setup_logging
from meeting_pipeline.jobs.reconciliation_job import run as run_reconciliation
from meeting_pipeline.services.pipeline_service import Pipeline, build_pipeline

log = get_project_logger()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconciliation очередей и пайплайна встреч")
    parser.add_argument("--once", action="store_true", help="Один проход и выход")
    parser.add_argument("--limit", type=int, default=None, help="Сколько встреч проверять за проход")
    return parser.parse_args(argv)


def _tick(pipeline: Pipeline, limit: int) -> None:
    try:
        run_reconciliation(limit=limit, pipeline=pipeline)
    except Exception as e:
        log.error(
            "worker_reconciliation_error",
            exc_info=True,
            extra={"payload": {"err": str(e)[:300]}},
        )


def main(argv: list[str] | None = None) -> None:
    setup_logging()
    args = _parse_args(argv)
    settings = get_settings()
    limit = int(args.limit if args.limit is not None else settings.reconciliation_limit)
    pipeline = build_pipeline()

    if args.once:
        _tick(pipeline, limit)
        return

    interval_sec = max(5, int(settings.reconciliation_interval_sec))
    stop = threading.Event()

    def _shutdown(signum, _frame) -> None:
        log.info("worker_reconciliation_signal", extra={"payload": {"signal": signum}})
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    log.info(
        "worker_reconciliation_started",
        extra={
            "payload": {
                "enabled": bool(settings.reconciliation_enabled),
                "interval_sec": interval_sec,
                "limit": limit,
            }
        },
    )
    while not stop.is_set():
        _tick(pipeline, limit)
        stop.wait(interval_sec)
    log.info("worker_reconciliation_stopped")


if __name__ == "__main__":
    main()
