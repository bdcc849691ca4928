"""
API Gateway (FastAPI).

Функции:
- /health
- /metrics (в т.ч. глубина очередей стадий)
- HTTP API пайплайна встреч и статистики очередей

При QUEUE_MODE=inline очереди живут в памяти процесса, поэтому воркеры
стадий запускаются прямо здесь (локальный прогон без Redis).
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apps.api_gateway.routers.meetings import router as meetings_router
from apps.api_gateway.routers.queues import router as queues_router
from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.errors import AppError, ErrCode
from meeting_pipeline.common.logging import get_project_logger, setup_logging
from meeting_pipeline.common.metrics import setup_metrics_endpoint
from meeting_pipeline.services.pipeline_service import build_stage_workers, get_pipeline
from meeting_pipeline.storage.db import create_schema
from meeting_pipeline.worker.stage_worker import StageWorker

log = get_project_logger()

_STATUS_BY_CODE = {
    ErrCode.VALIDATION: 400,
    ErrCode.UNSUPPORTED_INPUT: 400,
    ErrCode.UNAUTHORIZED: 401,
    ErrCode.FORBIDDEN: 403,
    ErrCode.NOT_FOUND: 404,
    ErrCode.CONFLICT: 409,
    ErrCode.QUEUE_UNAVAILABLE: 503,
}


def _queue_stats() -> dict[str, Any]:
    stats = get_pipeline().orchestrator.get_queue_stats()
    stats.pop("total_jobs", None)
    return stats


def _create_app() -> FastAPI:
    app = FastAPI(title="Meeting Pipeline", version="0.1.0")
    settings = get_settings()
    inline_workers: list[StageWorker] = []

    setup_metrics_endpoint(app, stats_provider=_queue_stats)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        status_code = _STATUS_BY_CODE.get(exc.code, 500)
        log.warning(
            "http_app_error",
            extra={
                "payload": {
                    "route": request.url.path,
                    "status_code": status_code,
                    "code": exc.code,
                    "message": exc.message,
                }
            },
        )
        return JSONResponse(
            status_code=status_code,
            content={"detail": {"code": exc.code, "message": exc.message, "details": exc.details or {}}},
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    @app.on_event("startup")
    def startup_inline_workers() -> None:
        if (settings.queue_mode or "").strip().lower() != "inline":
            return
        create_schema()
        inline_workers.extend(build_stage_workers(get_pipeline(), service_name="api-gateway"))
        for w in inline_workers:
            w.start()
        log.info("inline_workers_started", extra={"payload": {"workers": len(inline_workers)}})

    @app.on_event("shutdown")
    def shutdown_inline_workers() -> None:
        for w in inline_workers:
            w.stop(timeout=5)
        inline_workers.clear()

    app.include_router(meetings_router, prefix="/v1")
    app.include_router(queues_router, prefix="/v1")

    return app


setup_logging()
app = _create_app()


if __name__ == "__main__":
    import uvicorn

    _s = get_settings()
    uvicorn.run(app, host=_s.api_host, port=_s.api_port, log_config=None)
