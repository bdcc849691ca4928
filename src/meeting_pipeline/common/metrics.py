"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics
- Общие счётчики и гистограммы для всех стадий пайплайна
- Используется API Gateway и воркерами
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

# Общее количество HTTP-запросов
REQUESTS_TOTAL = Counter(
    "agent_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "agent_http_request_latency_ms",
    "Задержка HTTP запроса (мс)",
    ["service", "route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

# Задержки по стадиям пайплайна
PIPELINE_STAGE_LATENCY_MS = Histogram(
    "agent_pipeline_stage_latency_ms",
    "Задержка выполнения стадий пайплайна (мс)",
    ["service", "stage"],
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 300000),
)

# Обработка задач очередей (enqueued|deduplicated|success|retry|failed|stalled|cancelled)
QUEUE_TASKS_TOTAL = Counter(
    "agent_queue_tasks_total",
    "Количество обработанных задач очереди",
    ["service", "queue", "result"],
)

QUEUE_DEPTH = Gauge(
    "agent_queue_depth",
    "Текущее количество задач в очереди стадии по состояниям",
    ["queue", "state"],
)

# Переходы статуса встречи
PIPELINE_TRANSITIONS_TOTAL = Counter(
    "agent_pipeline_transitions_total",
    "Количество переходов статуса встречи",
    ["status"],
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "agent_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)

# Источник статистики очередей: {stage: {waiting, active, ...}}
QueueStatsProvider = Callable[[], dict[str, Any]]


@contextmanager
def track_stage_latency(service: str, stage: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        PIPELINE_STAGE_LATENCY_MS.labels(service=service, stage=stage).observe(elapsed_ms)


def record_transition(status: str) -> None:
    PIPELINE_TRANSITIONS_TOTAL.labels(status=status).inc()


def refresh_queue_metrics(provider: QueueStatsProvider | None) -> None:
    if provider is None:
        return
    try:
        stats = provider()
        for queue, counts in stats.items():
            if not isinstance(counts, dict):
                continue
            for state in ("waiting", "active", "delayed", "completed", "failed"):
                QUEUE_DEPTH.labels(queue=queue, state=state).set(int(counts.get(state, 0)))
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="queue_metrics").inc()


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI, stats_provider: QueueStatsProvider | None = None) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        route = request.url.path
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        status_code = str(response.status_code)

        REQUESTS_TOTAL.labels(
            service="api-gateway",
            route=route,
            method=method,
            status=status_code,
        ).inc()
        HTTP_REQUEST_LATENCY_MS.labels(
            service="api-gateway",
            route=route,
            method=method,
        ).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        refresh_queue_metrics(stats_provider)
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
