"""
Prometheus metrics collection.

In-memory counters; Prometheus handles storage.
"""

import time
from typing import Optional

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for AuditProxy.

    A registry can be injected so independent collectors (tests) don't
    collide on metric names.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else REGISTRY

        # Service info
        self.service_info = Info(
            "auditproxy_service",
            "AuditProxy service information",
            registry=self.registry,
        )
        self.service_info.info({
            "version": "0.1.0",
            "service": "auditproxy",
        })

        # Forwarding metrics
        self.proxy_requests_total = Counter(
            "proxy_requests_total",
            "Total forwarded requests",
            ["method", "outcome"],
            registry=self.registry,
        )

        self.proxy_request_duration = Histogram(
            "proxy_request_duration_seconds",
            "Forwarded request duration in seconds",
            ["method"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry,
        )

        self.upstream_responses_total = Counter(
            "proxy_upstream_responses_total",
            "Upstream responses by status class",
            ["status_class"],
            registry=self.registry,
        )

        # Audit metrics
        self.audit_write_failures_total = Counter(
            "audit_write_failures_total",
            "Audit records that could not be persisted",
            ["kind"],
            registry=self.registry,
        )

        self.retired_lines_total = Counter(
            "audit_retired_lines_total",
            "Audit log lines removed by retention",
            ["file"],
            registry=self.registry,
        )

        # Privileged access metrics
        self.decrypt_access_total = Counter(
            "decrypt_access_total",
            "Decrypted log access decisions",
            ["decision"],
            registry=self.registry,
        )

        # Session metrics
        self.active_sessions = Gauge(
            "active_sessions",
            "Currently tracked sessions",
            registry=self.registry,
        )

        self.uptime_seconds = Gauge(
            "uptime_seconds",
            "Service uptime in seconds",
            registry=self.registry,
        )

        # Track start time for uptime calculation
        self._start_time = time.time()

    def record_forward(
        self,
        method: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record one forwarded call. Status 0 means the call failed."""
        outcome = "failure" if status == 0 else "success"
        self.proxy_requests_total.labels(method=method, outcome=outcome).inc()
        self.proxy_request_duration.labels(method=method).observe(duration_seconds)

        if status:
            self.upstream_responses_total.labels(status_class=f"{status // 100}xx").inc()

    def record_audit_failure(self, kind: str) -> None:
        """Record a swallowed audit write failure."""
        self.audit_write_failures_total.labels(kind=kind).inc()

    def record_retirement(self, file_name: str, removed: int) -> None:
        self.retired_lines_total.labels(file=file_name).inc(removed)

    def record_decrypt_access(self, decision: str) -> None:
        """Record a decrypted log access decision (granted, unauthorized, rate_limited)."""
        self.decrypt_access_total.labels(decision=decision).inc()

    def set_active_sessions(self, count: int) -> None:
        self.active_sessions.set(count)

    def update_uptime(self) -> None:
        """Update service uptime metric."""
        uptime = time.time() - self._start_time
        self.uptime_seconds.set(uptime)
