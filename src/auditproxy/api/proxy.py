"""
Forwarding API endpoints.

- POST /api/request: forward and return the wrapped ProxyResponse
- POST /api/raw-request: forward and return the upstream body as is
- GET on both: service information
"""

import json
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response

from ..core.proxy import ProxyEngine
from ..core.session import SessionTracker
from ..models.proxy import ErrorResponse, ProxyRequest, ProxyResponse

logger = structlog.get_logger(__name__)

router = APIRouter()

SESSION_HEADER = "X-Session-ID"
FAILED_UPSTREAM_STATUS = 502


def get_proxy_engine(request: Request) -> ProxyEngine:
    """Dependency to get the proxy engine from app state."""
    return request.app.state.proxy_engine


def get_session_tracker(request: Request) -> SessionTracker:
    return request.app.state.sessions


@router.post(
    "/request",
    response_model=ProxyResponse,
    responses={
        422: {"description": "Malformed request description"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
    summary="Forward a request",
    description="""
    Execute the described HTTP call and return the wrapped result.

    Every call is audited: a masked plaintext record and an encrypted
    record are written before the response is returned. A failed call is
    reported as status 0 with statusText "Request Failed".

    Send the returned `X-Session-ID` header on later calls to correlate
    their audit records.
    """,
)
async def forward_request(
    payload: ProxyRequest,
    response: Response,
    engine: ProxyEngine = Depends(get_proxy_engine),
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
) -> ProxyResponse:
    result, session_id = await engine.forward(payload, x_session_id)
    response.headers[SESSION_HEADER] = session_id
    return result


@router.post(
    "/raw-request",
    summary="Forward a request, raw response",
    description="""
    Execute the described HTTP call and answer with the upstream status and
    body. JSON bodies are pretty-printed. Upstream headers are echoed as
    `X-Original-<name>`. A failed call answers 502 with the error body.
    """,
)
async def forward_raw_request(
    payload: ProxyRequest,
    engine: ProxyEngine = Depends(get_proxy_engine),
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
) -> Response:
    result, session_id = await engine.forward(payload, x_session_id)

    headers = {SESSION_HEADER: session_id}
    for name, value in (result.headers or {}).items():
        headers["X-Original-" + name.replace(" ", "-")] = value

    status = result.status or FAILED_UPSTREAM_STATUS
    if status in (204, 304) or status < 200:
        return Response(status_code=status, headers=headers)

    return Response(
        content=_pretty_json(result.body),
        status_code=status,
        headers=headers,
        media_type="application/json",
    )


def _pretty_json(body: str) -> str:
    try:
        return json.dumps(json.loads(body), indent=2, ensure_ascii=False)
    except ValueError:
        return body


@router.get("/request", response_model=ProxyResponse, summary="Forwarding service information")
async def request_service_info(
    request: Request,
    response: Response,
    sessions: SessionTracker = Depends(get_session_tracker),
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
) -> ProxyResponse:
    if x_session_id is None:
        response.headers[SESSION_HEADER] = sessions.create_session()

    info = {
        "message": "AuditProxy service is running",
        "version": request.app.version,
        "endpoints": {
            "POST /api/request": "Forward a request (wrapped response)",
            "POST /api/raw-request": "Forward a request (raw response)",
            "GET /api/request": "Service status",
        },
    }
    return ProxyResponse(
        status=200,
        status_text="OK",
        headers=None,
        body=json.dumps(info, indent=2),
        response_time=0,
        size=0,
    )


@router.get("/raw-request", summary="Raw forwarding service information")
async def raw_service_info(
    request: Request,
    response: Response,
    sessions: SessionTracker = Depends(get_session_tracker),
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
) -> Dict[str, Any]:
    if x_session_id is None:
        response.headers[SESSION_HEADER] = sessions.create_session()

    return {
        "message": "AuditProxy raw service is running",
        "version": request.app.version,
        "endpoint": "POST /api/raw-request - Returns raw API response body",
    }
