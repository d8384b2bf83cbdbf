"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

import json
import secrets
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from auditproxy.config import AuditSettings, ProxySettings, SecuritySettings, SessionSettings, Settings
from auditproxy.core.audit import AuditFiles, AuditLogger
from auditproxy.core.crypto import CipherRegistry, build_cipher_registry
from auditproxy.core.metrics import MetricsCollector
from auditproxy.core.repository import LogRepository
from auditproxy.core.session import SessionTracker
from auditproxy.main import create_app


@pytest.fixture
def temp_log_dir() -> Generator[Path, None, None]:
    """Create temporary log directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def audit_settings(temp_log_dir: Path) -> AuditSettings:
    return AuditSettings(log_dir=temp_log_dir)


@pytest.fixture
def test_settings(audit_settings: AuditSettings) -> Settings:
    """Application settings pointing at the temporary log directory."""
    return Settings(
        debug=True,
        log_level="DEBUG",
        audit=audit_settings,
        proxy=ProxySettings(connect_timeout_seconds=5, read_timeout_seconds=5),
        session=SessionSettings(),
        security=SecuritySettings(),
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Collector on a private registry so tests never collide on metric names."""
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def audit_files(audit_settings: AuditSettings) -> AuditFiles:
    return AuditFiles(audit_settings)


@pytest.fixture
def ciphers() -> CipherRegistry:
    return build_cipher_registry(secrets.token_bytes(32))


@pytest.fixture
def audit_logger(audit_files: AuditFiles, ciphers: CipherRegistry, metrics: MetricsCollector) -> AuditLogger:
    return AuditLogger(audit_files, ciphers, metrics)


@pytest.fixture
def repository(audit_files: AuditFiles, ciphers: CipherRegistry, metrics: MetricsCollector) -> LogRepository:
    return LogRepository(audit_files, ciphers, metrics)


@pytest.fixture
def sessions() -> SessionTracker:
    return SessionTracker()


@pytest.fixture
def test_client(test_settings: Settings) -> Generator[TestClient, None, None]:
    """FastAPI test client with test configuration."""
    app = create_app(test_settings, CollectorRegistry())
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


def build_upstream_app() -> web.Application:
    """Fake upstream service recording every request it receives."""
    app = web.Application()
    app["received"] = []

    async def echo(request: web.Request) -> web.Response:
        body = await request.text()
        request.app["received"].append({
            "method": request.method,
            "path": request.path,
            "headers": dict(request.headers),
            "body": body,
        })
        return web.json_response(
            {"method": request.method, "headers": dict(request.headers), "body": body},
            headers={"X-Upstream": "echo"},
        )

    async def status(request: web.Request) -> web.Response:
        code = int(request.match_info["code"])
        if code == 204:
            return web.Response(status=204)
        return web.Response(status=code, text=json.dumps({"status": code}), content_type="application/json")

    async def chain(request: web.Request) -> web.Response:
        remaining = int(request.match_info["remaining"])
        location = "/echo" if remaining == 0 else f"/chain/{remaining - 1}"
        raise web.HTTPFound(location)

    async def loop_a(request: web.Request) -> web.Response:
        raise web.HTTPFound("/loop/b")

    async def loop_b(request: web.Request) -> web.Response:
        raise web.HTTPFound("/loop/a")

    async def see_other(request: web.Request) -> web.Response:
        raise web.HTTPSeeOther("/echo")

    async def temporary(request: web.Request) -> web.Response:
        raise web.HTTPTemporaryRedirect("/echo")

    async def latin1(request: web.Request) -> web.Response:
        return web.Response(body="café".encode("latin-1"), content_type="text/plain", charset="latin-1")

    app.router.add_route("*", "/echo", echo)
    app.router.add_get("/status/{code}", status)
    app.router.add_get("/chain/{remaining}", chain)
    app.router.add_get("/loop/a", loop_a)
    app.router.add_get("/loop/b", loop_b)
    app.router.add_post("/see-other", see_other)
    app.router.add_post("/temporary", temporary)
    app.router.add_get("/latin1", latin1)
    return app


@pytest_asyncio.fixture
async def upstream() -> AsyncGenerator[TestServer, None]:
    """Running fake upstream; use upstream.make_url(path) for targets."""
    server = TestServer(build_upstream_app())
    await server.start_server()
    yield server
    await server.close()
