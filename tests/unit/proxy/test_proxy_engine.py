"""
Tests for ProxyEngine.

Tests forwarding against a local fake upstream: request shaping, auditing
of successes and failures, redirects and TLS policy selection.
"""

import json
import ssl
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from auditproxy.config import ProxySettings
from auditproxy.core.audit import AuditFiles, AuditLogger
from auditproxy.core.crypto import CipherRegistry
from auditproxy.core.exceptions import ForwardingError
from auditproxy.core.masking import MASK
from auditproxy.core.metrics import MetricsCollector
from auditproxy.core.proxy import (
    ProxyEngine,
    TrustAllTlsPolicy,
    VerifyingTlsPolicy,
    build_outbound_headers,
    normalize_url,
    resolve_method,
)
from auditproxy.core.session import SessionTracker
from auditproxy.models.proxy import ProxyRequest


def read_lines(path) -> list:
    if not path.exists():
        return []
    return [line for line in path.read_text(encoding="utf-8").split("\n") if line]


@pytest_asyncio.fixture
async def engine(
    sessions: SessionTracker,
    audit_logger: AuditLogger,
    metrics: MetricsCollector,
) -> AsyncGenerator[ProxyEngine, None]:
    proxy_engine = ProxyEngine(
        ProxySettings(connect_timeout_seconds=5, read_timeout_seconds=5),
        sessions,
        audit_logger,
        metrics,
    )
    await proxy_engine.start()
    yield proxy_engine
    await proxy_engine.stop()


class TestRequestShaping:
    """Test URL, method and header normalization."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("example.com/login", "https://example.com/login"),
            ("http://example.com", "http://example.com"),
            ("HTTPS://example.com", "HTTPS://example.com"),
            ("  example.com  ", "https://example.com"),
        ],
    )
    def test_normalize_url(self, url: str, expected: str) -> None:
        assert normalize_url(url) == expected

    @pytest.mark.parametrize(
        "method,expected",
        [("get", "GET"), ("Patch", "PATCH"), ("OPTIONS", "OPTIONS"), ("TRACE", "GET"), ("", "GET"), (None, "GET")],
    )
    def test_resolve_method(self, method, expected: str) -> None:
        assert resolve_method(method) == expected

    def test_outbound_headers_trimmed(self) -> None:
        headers = build_outbound_headers({" X-A ": " 1 ", "X-Blank": "  ", "  ": "v", "X-None": None})

        assert headers == {"X-A": "1"}
        assert build_outbound_headers(None) == {}


class TestForwarding:
    """Test successful forwarding and its audit trail."""

    @pytest.mark.asyncio
    async def test_post_forwards_real_values_and_logs_masked(
        self,
        engine: ProxyEngine,
        upstream,
        audit_files: AuditFiles,
        ciphers: CipherRegistry,
    ) -> None:
        """Test upstream receives real credentials while the plaintext log is masked."""
        request = ProxyRequest(
            url=str(upstream.make_url("/echo")),
            method="post",
            headers={"Authorization": "Bearer abc123"},
            body='{"password":"p@ss"}',
        )

        response, session_id = await engine.forward(request)

        assert response.status == 200
        received = upstream.app["received"][0]
        assert received["method"] == "POST"
        assert received["headers"]["Authorization"] == "Bearer abc123"
        assert received["headers"]["Content-Type"] == "application/json"
        assert received["body"] == '{"password":"p@ss"}'

        masked_lines = read_lines(audit_files.api_log)
        encrypted_lines = read_lines(audit_files.encrypted_log)
        assert len(masked_lines) == 1
        assert len(encrypted_lines) == 1

        masked = json.loads(masked_lines[0])
        assert masked["sessionId"] == session_id
        assert masked["requestHeaders"]["Authorization"] == MASK
        assert f"password={MASK}" in masked["requestBody"]
        assert "abc123" not in masked_lines[0]

        original = json.loads(ciphers.decrypt_line(encrypted_lines[0]))
        assert original["requestHeaders"]["Authorization"] == "Bearer abc123"
        assert original["requestBody"] == '{"password":"p@ss"}'

    @pytest.mark.asyncio
    async def test_response_fields(self, engine: ProxyEngine, upstream) -> None:
        response, _ = await engine.forward(ProxyRequest(url=str(upstream.make_url("/echo"))))

        assert response.status_text == "OK"
        assert response.headers["X-Upstream"] == "echo"
        assert json.loads(response.body)["method"] == "GET"
        assert response.size == len(response.body.encode("utf-8"))
        assert response.response_time >= 0

    @pytest.mark.asyncio
    async def test_user_agent_default_and_override(self, engine: ProxyEngine, upstream) -> None:
        url = str(upstream.make_url("/echo"))
        await engine.forward(ProxyRequest(url=url))
        await engine.forward(ProxyRequest(url=url, headers={"User-Agent": "custom/2"}))

        received = upstream.app["received"]
        assert received[0]["headers"]["User-Agent"] == "AuditProxy/1.0"
        assert received[1]["headers"]["User-Agent"] == "custom/2"

    @pytest.mark.asyncio
    async def test_get_body_not_sent(self, engine: ProxyEngine, upstream) -> None:
        await engine.forward(ProxyRequest(url=str(upstream.make_url("/echo")), method="GET", body="ignored"))

        assert upstream.app["received"][0]["body"] == ""

    @pytest.mark.asyncio
    async def test_unknown_method_degrades_to_get(self, engine: ProxyEngine, upstream) -> None:
        await engine.forward(ProxyRequest(url=str(upstream.make_url("/echo")), method="BREW"))

        assert upstream.app["received"][0]["method"] == "GET"

    @pytest.mark.asyncio
    async def test_error_status_is_not_a_failure(
        self,
        engine: ProxyEngine,
        upstream,
        audit_files: AuditFiles,
    ) -> None:
        response, _ = await engine.forward(ProxyRequest(url=str(upstream.make_url("/status/503"))))

        assert response.status == 503
        assert json.loads(read_lines(audit_files.api_log)[0])["logLevel"] == "ERROR"
        assert read_lines(audit_files.error_log) == []

    @pytest.mark.asyncio
    async def test_declared_charset_decoding(self, engine: ProxyEngine, upstream) -> None:
        response, _ = await engine.forward(ProxyRequest(url=str(upstream.make_url("/latin1"))))

        assert response.body == "café"
        assert response.size == len("café".encode("utf-8"))

    @pytest.mark.asyncio
    async def test_session_reused_when_known(self, engine: ProxyEngine, upstream) -> None:
        url = str(upstream.make_url("/echo"))
        _, first = await engine.forward(ProxyRequest(url=url))
        _, second = await engine.forward(ProxyRequest(url=url), first)
        _, third = await engine.forward(ProxyRequest(url=url), "unknown-session")

        assert second == first
        assert third != first

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, engine: ProxyEngine, upstream, metrics: MetricsCollector) -> None:
        await engine.forward(ProxyRequest(url=str(upstream.make_url("/echo"))))

        assert metrics.registry.get_sample_value(
            "proxy_requests_total", {"method": "GET", "outcome": "success"}
        ) == 1.0


class TestRedirects:
    """Test manual redirect handling."""

    @pytest.mark.asyncio
    async def test_follows_chain_within_cap(self, engine: ProxyEngine, upstream) -> None:
        response, _ = await engine.forward(ProxyRequest(url=str(upstream.make_url("/chain/4"))))

        assert response.status == 200
        assert upstream.app["received"][0]["path"] == "/echo"

    @pytest.mark.asyncio
    async def test_too_many_redirects_fails(
        self,
        engine: ProxyEngine,
        upstream,
        audit_files: AuditFiles,
    ) -> None:
        response, _ = await engine.forward(ProxyRequest(url=str(upstream.make_url("/chain/5"))))

        assert response.status == 0
        assert json.loads(response.body)["type"] == "TooManyRedirectsError"

    @pytest.mark.asyncio
    async def test_circular_redirect_fails(self, engine: ProxyEngine, upstream) -> None:
        response, _ = await engine.forward(ProxyRequest(url=str(upstream.make_url("/loop/a"))))

        assert response.status == 0
        assert json.loads(response.body)["type"] == "CircularRedirectError"

    @pytest.mark.asyncio
    async def test_303_switches_to_get_without_body(self, engine: ProxyEngine, upstream) -> None:
        await engine.forward(
            ProxyRequest(url=str(upstream.make_url("/see-other")), method="POST", body='{"a":1}')
        )

        received = upstream.app["received"][0]
        assert received["method"] == "GET"
        assert received["body"] == ""

    @pytest.mark.asyncio
    async def test_307_preserves_method_and_body(self, engine: ProxyEngine, upstream) -> None:
        await engine.forward(
            ProxyRequest(url=str(upstream.make_url("/temporary")), method="POST", body='{"a":1}')
        )

        received = upstream.app["received"][0]
        assert received["method"] == "POST"
        assert received["body"] == '{"a":1}'


class TestFailures:
    """Test the failure path."""

    @pytest.mark.asyncio
    async def test_connection_failure_audited(
        self,
        engine: ProxyEngine,
        audit_files: AuditFiles,
        metrics: MetricsCollector,
    ) -> None:
        """Test a refused connection yields status 0, one error record and one exchange pair."""
        request = ProxyRequest(url="http://127.0.0.1:1/unreachable", method="POST", body="{}")

        response, session_id = await engine.forward(request)

        assert response.status == 0
        assert response.status_text == "Request Failed"
        assert response.size == 0
        assert response.headers == {"Content-Type": "application/json"}
        error_body = json.loads(response.body)
        assert set(error_body) == {"error", "type"}

        errors = read_lines(audit_files.error_log)
        assert len(errors) == 1
        error = json.loads(errors[0])
        assert error["operation"] == "API_REQUEST"
        assert error["sessionId"] == session_id

        masked = read_lines(audit_files.api_log)
        assert len(masked) == 1
        assert len(read_lines(audit_files.encrypted_log)) == 1
        record = json.loads(masked[0])
        assert record["responseStatus"] == 0
        assert record["url"] == "http://127.0.0.1:1/unreachable"

        assert metrics.registry.get_sample_value(
            "proxy_requests_total", {"method": "POST", "outcome": "failure"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_failure_records_callers_url(self, engine: ProxyEngine, audit_files: AuditFiles) -> None:
        """Test the failure record keeps the URL as the caller wrote it."""
        await engine.forward(ProxyRequest(url="127.0.0.1:1/login"))

        record = json.loads(read_lines(audit_files.api_log)[0])
        assert record["url"] == "127.0.0.1:1/login"

    @pytest.mark.asyncio
    async def test_malformed_url_does_not_raise(self, engine: ProxyEngine) -> None:
        response, _ = await engine.forward(ProxyRequest(url="http://[not-a-host/"))

        assert response.status == 0

    @pytest.mark.asyncio
    async def test_execute_requires_started_engine(
        self,
        sessions: SessionTracker,
        audit_logger: AuditLogger,
    ) -> None:
        """Test executing on a stopped engine raises a forwarding error."""
        stopped = ProxyEngine(ProxySettings(), sessions, audit_logger)

        with pytest.raises(ForwardingError):
            await stopped._execute("GET", "http://127.0.0.1:1/", {}, None)


class TestTlsPolicy:
    """Test TLS verification policies."""

    def test_verifying_policy(self) -> None:
        context = VerifyingTlsPolicy().ssl_context()

        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname is True

    def test_trust_all_policy_restricts_versions(self) -> None:
        context = TrustAllTlsPolicy(["TLSv1.2"]).ssl_context()

        assert context.verify_mode == ssl.CERT_NONE
        assert context.check_hostname is False
        assert context.minimum_version == ssl.TLSVersion.TLSv1_2
        assert context.maximum_version == ssl.TLSVersion.TLSv1_2

    def test_unknown_tls_version_rejected(self) -> None:
        with pytest.raises(ValueError):
            TrustAllTlsPolicy(["SSLv3"])

    def test_engine_selects_policy_from_settings(
        self,
        sessions: SessionTracker,
        audit_logger: AuditLogger,
    ) -> None:
        verifying = ProxyEngine(ProxySettings(), sessions, audit_logger)
        trusting = ProxyEngine(ProxySettings(trust_all_certificates=True), sessions, audit_logger)

        assert isinstance(verifying.tls_policy, VerifyingTlsPolicy)
        assert isinstance(trusting.tls_policy, TrustAllTlsPolicy)
