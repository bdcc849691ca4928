"""
Worker Pipeline.

Назначение:
- запуск воркеров стадий пайплайна (одна стадия через --stage или все сразу)
- оркестратор процесса подписан на события очередей: завершение транскрипции
  ставит fan-out задачи, завершение стадий анализа собирается в fan-in
"""

from __future__ import annotations

import argparse
import signal
import threading

from meeting_pipeline.common.logging import get_project_logger, setup_logging
from meeting_pipeline.domain.enums import StageName
from meeting_pipeline.services.pipeline_service import build_pipeline, build_stage_workers

log = get_project_logger()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Воркеры стадий пайплайна встреч")
    parser.add_argument(
        "--stage",
        action="append",
        choices=[s.value for s in StageName],
        help="Стадия для обработки (можно указать несколько раз). По умолчанию все.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    setup_logging()
    args = _parse_args(argv)
    stages = [StageName(s) for s in args.stage] if args.stage else None

    pipeline = build_pipeline()
    workers = build_stage_workers(pipeline, stages)
    stop = threading.Event()

    def _shutdown(signum, _frame) -> None:
        log.info("worker_pipeline_signal", extra={"payload": {"signal": signum}})
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    for w in workers:
        w.start()
    log.info(
        "worker_pipeline_started",
        extra={"payload": {"stages": [w.stage.value for w in workers]}},
    )

    stop.wait()
    for w in workers:
        w.stop(timeout=10)
    log.info("worker_pipeline_stopped")


if __name__ == "__main__":
    main()
