"""
Audit log API endpoints.

Read views over the masked log, the error log and statistics, privileged
access to the decrypted log, and retention.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request

from ..core.audit import AuditLogger
from ..core.auth import AccessGuard
from ..core.exceptions import AuthenticationError, RateLimitError, ValidationError
from ..core.repository import (
    DEFAULT_ALL_LIMIT,
    DEFAULT_ERROR_LIMIT,
    DEFAULT_RECENT_LIMIT,
    LogRepository,
)
from ..models.proxy import ErrorResponse
from ..models.records import ErrorRecord, ExchangeRecord, LogStatistics

logger = structlog.get_logger(__name__)

router = APIRouter()

SESSION_HEADER = "X-Session-ID"
DEFAULT_DAYS_TO_KEEP = 30
DATE_FORMAT = "%Y-%m-%d"


def get_log_repository(request: Request) -> LogRepository:
    """Dependency to get the log repository from app state."""
    return request.app.state.repository


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit


def get_access_guard(request: Request) -> AccessGuard:
    return request.app.state.access_guard


def parse_int(value: Optional[str], default: int) -> int:
    """Integer query parameter; anything unparsable falls back to the default."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_date(value: Optional[str], name: str) -> datetime:
    if not value:
        raise ValidationError(
            "startDate and endDate parameters are required",
            details={"parameter": name},
        )
    try:
        return datetime.strptime(value, DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValidationError(
            f"{name} must be formatted as YYYY-MM-DD",
            details={"parameter": name, "value": value},
        )


@asynccontextmanager
async def audited_failures(request: Request, operation: str) -> AsyncIterator[None]:
    """Record unexpected endpoint failures in the error log when a session is known."""
    try:
        yield
    except Exception as e:
        logger.error(
            "Log endpoint failed",
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        session_id = request.headers.get(SESSION_HEADER)
        if session_id:
            await request.app.state.audit.record_error(session_id, operation, str(e), e)
        raise


@router.get("", response_model=List[ExchangeRecord], summary="Recent audit records")
async def recent_logs(
    request: Request,
    limit: Optional[str] = Query(None),
    repository: LogRepository = Depends(get_log_repository),
) -> List[ExchangeRecord]:
    async with audited_failures(request, "LOG_SERVLET_ERROR"):
        return await repository.recent(parse_int(limit, DEFAULT_RECENT_LIMIT))


@router.get("/all", response_model=List[ExchangeRecord], summary="All audit records (capped)")
async def all_logs(
    request: Request,
    repository: LogRepository = Depends(get_log_repository),
) -> List[ExchangeRecord]:
    async with audited_failures(request, "LOG_SERVLET_ERROR"):
        records = await repository.all(DEFAULT_ALL_LIMIT)
        logger.debug("Fetched all audit records", count=len(records))
        return records


@router.get("/stats", response_model=LogStatistics, summary="Audit log statistics")
async def log_statistics(
    request: Request,
    repository: LogRepository = Depends(get_log_repository),
) -> LogStatistics:
    async with audited_failures(request, "LOG_SERVLET_ERROR"):
        return await repository.statistics()


@router.get("/errors", response_model=List[ErrorRecord], summary="Recent error records")
async def error_logs(
    request: Request,
    limit: Optional[str] = Query(None),
    repository: LogRepository = Depends(get_log_repository),
) -> List[ErrorRecord]:
    async with audited_failures(request, "LOG_SERVLET_ERROR"):
        return await repository.errors(parse_int(limit, DEFAULT_ERROR_LIMIT))


@router.get(
    "/session",
    response_model=List[ExchangeRecord],
    responses={400: {"model": ErrorResponse, "description": "sessionId missing"}},
    summary="Audit records of one session",
)
async def session_logs(
    request: Request,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    repository: LogRepository = Depends(get_log_repository),
) -> List[ExchangeRecord]:
    if session_id is None:
        raise ValidationError("sessionId parameter is required", details={"parameter": "sessionId"})

    async with audited_failures(request, "LOG_SERVLET_ERROR"):
        records = await repository.by_session(session_id)
        logger.debug("Fetched session audit records", session_id=session_id[:8] + "...", count=len(records))
        return records


@router.get(
    "/daterange",
    response_model=List[ExchangeRecord],
    responses={400: {"model": ErrorResponse, "description": "Dates missing or invalid"}},
    summary="Audit records in a date range",
    description="Both dates are YYYY-MM-DD (UTC); the end day is included.",
)
async def date_range_logs(
    request: Request,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    repository: LogRepository = Depends(get_log_repository),
) -> List[ExchangeRecord]:
    start = parse_date(start_date, "startDate")
    end = parse_date(end_date, "endDate") + timedelta(days=1)

    async with audited_failures(request, "LOG_SERVLET_ERROR"):
        return await repository.by_date_range(start, end)


@router.get(
    "/decrypted",
    response_model=List[ExchangeRecord],
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
    },
    summary="Decrypted audit records",
    description="""
    Full-fidelity records from the encrypted log.

    **Credentials** (any one):
    - `Authorization: Bearer <decryption token>`
    - `X-Admin-Key: <admin key>`
    - `local_auth=<development token>` query parameter, loopback callers only

    **Rate Limits:**
    - 10 requests per source per hour, counted only after authorization
    - 429 response with Retry-After when exceeded
    """,
)
async def decrypted_logs(
    request: Request,
    limit: Optional[str] = Query(None),
    local_auth: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    repository: LogRepository = Depends(get_log_repository),
    audit: AuditLogger = Depends(get_audit_logger),
    guard: AccessGuard = Depends(get_access_guard),
) -> List[ExchangeRecord]:
    source = request.client.host if request.client else "unknown"
    metrics = getattr(request.app.state, "metrics", None)

    bearer = None
    if authorization and authorization.startswith("Bearer "):
        bearer = authorization[len("Bearer "):]

    authorized = guard.authorize(
        bearer_token=bearer,
        admin_key=x_admin_key,
        source_is_local=guard.is_loopback(source),
        local_auth=local_auth,
    )
    if not authorized:
        if metrics:
            metrics.record_decrypt_access("unauthorized")
        if x_session_id:
            await audit.record_error(
                x_session_id,
                "UNAUTHORIZED_DECRYPTION_ACCESS",
                f"Unauthorized attempt to access encrypted logs from IP: {source}",
            )
        raise AuthenticationError()

    if not guard.check_rate(source):
        if metrics:
            metrics.record_decrypt_access("rate_limited")
        raise RateLimitError(retry_after=guard.retry_after())

    async with audited_failures(request, "LOG_SERVLET_ERROR"):
        records = await repository.decrypted(parse_int(limit, DEFAULT_RECENT_LIMIT))

        if metrics:
            metrics.record_decrypt_access("granted")
        if x_session_id:
            await audit.record(
                x_session_id,
                "GET",
                "/api/logs/decrypted",
                None,
                "",
                200,
                "Decrypted logs accessed successfully",
                None,
                0,
            )

        logger.info("Decrypted audit records served", source=source, count=len(records))
        return records


@router.post("/cleanup", summary="Retire old audit records")
async def cleanup_logs(
    request: Request,
    days_to_keep: Optional[str] = Query(None, alias="daysToKeep"),
    repository: LogRepository = Depends(get_log_repository),
) -> Dict[str, Any]:
    days = parse_int(days_to_keep, DEFAULT_DAYS_TO_KEEP)

    async with audited_failures(request, "LOG_SERVLET_POST_ERROR"):
        results = await repository.retire(days)

    return {
        "message": "Log cleanup completed",
        "daysKept": days,
        "files": {
            name: {"kept": result.kept, "removed": result.removed}
            for name, result in results.items()
        },
    }
