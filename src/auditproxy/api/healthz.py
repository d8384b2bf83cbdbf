"""
Health check endpoint.

- /healthz: Liveness probe (always 200 if service alive)
"""

from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Request

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/healthz",
    status_code=200,
    summary="Liveness probe",
    description="""
    Liveness probe endpoint.

    Always returns 200 OK if the service is running.
    """,
)
async def liveness_check(request: Request) -> Dict[str, Any]:
    """
    Liveness probe - always returns 200 if service is alive.
    """
    sessions = getattr(request.app.state, "sessions", None)
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "auditproxy",
        "version": request.app.version,
        "active_sessions": len(sessions) if sessions is not None else 0,
    }
