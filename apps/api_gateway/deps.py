"""
FastAPI Depends.

Сюда выносим:
- проверку авторизации (X-API-Key)
- доступ к процессному пайплайну (оркестратор + очереди)
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from meeting_pipeline.common.errors import ErrCode, UnauthorizedError
from meeting_pipeline.common.logging import get_project_logger
from meeting_pipeline.common.security import AuthContext, require_auth
from meeting_pipeline.services.orchestrator import PipelineOrchestrator
from meeting_pipeline.services.pipeline_service import get_pipeline

log = get_project_logger()


def _request_meta(request: Request | None) -> tuple[str, str, str | None]:
    if request is None:
        return "unknown", "UNKNOWN", None
    client_ip = request.client.host if request.client else None
    return request.url.path, request.method, client_ip


def _audit_deny(
    *,
    request: Request | None,
    status_code: int,
    reason: str,
    error_code: str,
    auth_type: str | None = None,
) -> None:
    endpoint, method, client_ip = _request_meta(request)
    log.warning(
        "security_audit_deny",
        extra={
            "payload": {
                "endpoint": endpoint,
                "method": method,
                "status_code": status_code,
                "reason": reason,
                "error_code": error_code,
                "auth_type": auth_type or "unknown",
                "client_ip": client_ip,
            }
        },
    )


def auth_dep(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> AuthContext:
    """
    Проверка авторизации для HTTP.
    """
    try:
        return require_auth(x_api_key=x_api_key)
    except UnauthorizedError as e:
        _audit_deny(
            request=request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            reason=e.message,
            error_code=e.code,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": e.code, "message": e.message},
        ) from e


def service_auth_dep(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> AuthContext:
    ctx = auth_dep(request, x_api_key)
    if ctx.auth_type in {"service_api_key", "none"}:
        return ctx

    _audit_deny(
        request=request,
        status_code=status.HTTP_403_FORBIDDEN,
        reason="not_service_identity",
        error_code=ErrCode.FORBIDDEN,
        auth_type=ctx.auth_type,
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": ErrCode.FORBIDDEN, "message": "Требуется service-авторизация"},
    )


def orchestrator_dep() -> PipelineOrchestrator:
    return get_pipeline().orchestrator
