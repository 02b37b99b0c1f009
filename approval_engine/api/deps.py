"""API Dependencies - Common dependencies for routes"""
from typing import Dict, Optional, Type
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..container import Container
from ..domain.errors import AuthenticationError, DomainError
from ..domain.models import ActorContext
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_correlation_id, set_correlation_id


def get_container(request: Request) -> Container:
    """The container the application was built with"""
    return request.app.state.container


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """
    Get or generate correlation ID for request tracing

    If client provides X-Correlation-Id, use it.
    Otherwise generate a new one.
    """
    correlation_id = x_correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


async def get_current_user_dep(
    authorization: Optional[str] = Header(None),
    container: Container = Depends(get_container)
) -> ActorContext:
    """
    Dependency to get current user from Authorization header

    Validates the bearer token and extracts ``sub`` and ``tenant_id``.

    Raises:
        HTTPException: 401 if token is invalid or missing
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": {"code": "AUTHENTICATION_ERROR", "message": "Authorization header is missing"}},
            headers={"WWW-Authenticate": "Bearer"}
        )

    try:
        return container.jwt_validator.get_actor_context(authorization)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.to_dict(),
            headers={"WWW-Authenticate": "Bearer"}
        )


# ============================================================================
# Structured results
# ============================================================================

def _error_statuses() -> Dict[str, int]:
    statuses: Dict[str, int] = {}
    pending = [DomainError]
    while pending:
        cls: Type[DomainError] = pending.pop()
        statuses.setdefault(cls.error_code, cls.http_status)
        pending.extend(cls.__subclasses__())
    statuses["INTERNAL_ERROR"] = status.HTTP_500_INTERNAL_SERVER_ERROR
    return statuses


ERROR_STATUSES = _error_statuses()


def result_response(result: BaseModel, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    """
    Render an engine result object

    Failed results keep their body and get the status of the domain error
    that produced their ``error_code``.
    """
    if getattr(result, "success", True):
        code = success_status
    else:
        code = ERROR_STATUSES.get(getattr(result, "error_code", None) or "", status.HTTP_400_BAD_REQUEST)
    return JSONResponse(
        status_code=code,
        content=result.model_dump(mode="json"),
        headers={"X-Correlation-Id": get_correlation_id() or ""}
    )
