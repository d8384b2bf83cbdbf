"""
Prometheus metrics endpoint.

Exposes metrics in Prometheus text format for scraping.
"""

import structlog
from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="""
    Prometheus metrics endpoint in standard text format.

    **Key Metrics:**
    - proxy_requests_total{method,outcome} - Forwarded requests
    - proxy_request_duration_seconds{method} - Forwarding latency histogram
    - proxy_upstream_responses_total{status_class} - Upstream responses
    - audit_write_failures_total{kind} - Audit records not persisted
    - audit_retired_lines_total{file} - Lines removed by retention
    - decrypt_access_total{decision} - Decrypted log access decisions
    - active_sessions - Tracked sessions
    """,
)
async def get_metrics(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    metrics_collector = getattr(request.app.state, "metrics", None)

    if not metrics_collector:
        logger.warning("Metrics collector not initialized")
        return Response(
            content="# Metrics collector not initialized\n",
            media_type=CONTENT_TYPE_LATEST,
        )

    sessions = getattr(request.app.state, "sessions", None)
    if sessions is not None:
        metrics_collector.set_active_sessions(len(sessions))
    metrics_collector.update_uptime()

    metrics_data = generate_latest(metrics_collector.registry)

    logger.debug("Metrics scraped successfully", size_bytes=len(metrics_data))

    return Response(
        content=metrics_data,
        media_type=CONTENT_TYPE_LATEST,
    )
