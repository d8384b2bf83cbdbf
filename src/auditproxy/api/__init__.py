"""
API endpoints package.

Contains FastAPI routers for all service endpoints:
- /api/request, /api/raw-request - Forwarding
- /api/logs/* - Audit log views, decryption and retention
- /metrics - Prometheus metrics
- /healthz - Liveness
"""
from .healthz import router as healthz_router
from .logs import router as logs_router
from .metrics import router as metrics_router
from .proxy import router as proxy_router

__all__ = ["healthz_router", "logs_router", "metrics_router", "proxy_router"]
