"""
Request forwarding engine.

Executes a client-described HTTP call through a shared, pooled aiohttp
session and hands the full exchange to the audit logger. Failed calls are
audited too, as a status-0 exchange plus an error record.

Features:
- Connection pool with global and per-destination caps
- Bounded connect/read timeouts, no retries
- Redirects followed up to a cap, circular chains rejected
- Pluggable TLS verification policy
"""

import asyncio
import json
import ssl
import time
from typing import Dict, Mapping, Optional, Protocol, Sequence, Tuple

import aiohttp
import structlog
from yarl import URL

from ..config import ProxySettings
from ..models.proxy import ProxyRequest, ProxyResponse
from .audit import AuditLogger
from .exceptions import CircularRedirectError, ForwardingError, TooManyRedirectsError
from .masking import mask_url
from .metrics import MetricsCollector
from .session import SessionTracker

logger = structlog.get_logger(__name__)

RECOGNIZED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"})
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

FAILED_STATUS_TEXT = "Request Failed"
FORWARD_OPERATION = "API_REQUEST"

TLS_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


class TlsPolicy(Protocol):
    """Builds the SSL context used for every outbound connection."""

    def ssl_context(self) -> ssl.SSLContext:
        ...


class VerifyingTlsPolicy:
    """System trust store with hostname verification."""

    def ssl_context(self) -> ssl.SSLContext:
        return ssl.create_default_context()


class TrustAllTlsPolicy:
    """
    Accepts any server certificate and skips hostname verification.

    Only for interoperability testing against hosts with broken
    certificates. Protocol versions are restricted to an allow-list.
    """

    def __init__(self, versions: Sequence[str] = ("TLSv1.2",)) -> None:
        unknown = [v for v in versions if v not in TLS_VERSIONS]
        if unknown or not versions:
            raise ValueError(f"Unsupported TLS versions: {unknown or 'none given'}")
        self.versions = sorted(TLS_VERSIONS[v] for v in versions)

    def ssl_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        context.minimum_version = self.versions[0]
        context.maximum_version = self.versions[-1]
        return context


def tls_policy_from_settings(settings: ProxySettings) -> TlsPolicy:
    if settings.trust_all_certificates:
        logger.warning(
            "Certificate verification disabled for outbound calls",
            tls_versions=settings.tls_versions,
        )
        return TrustAllTlsPolicy(settings.tls_versions)
    return VerifyingTlsPolicy()


def normalize_url(url: str) -> str:
    """Prepend https:// when the URL carries no http(s) scheme."""
    url = url.strip()
    lowered = url.lower()
    if not lowered.startswith("http://") and not lowered.startswith("https://"):
        return "https://" + url
    return url


def resolve_method(method: Optional[str]) -> str:
    """Upper-cased method; unrecognized verbs degrade to GET."""
    method = (method or "").strip().upper()
    return method if method in RECOGNIZED_METHODS else "GET"


def build_outbound_headers(headers: Optional[Mapping[str, Optional[str]]]) -> Dict[str, str]:
    """Copy headers whose trimmed key and value are both non-empty."""
    outbound: Dict[str, str] = {}
    if not headers:
        return outbound

    for key, value in headers.items():
        if key is None or value is None:
            continue
        key, value = key.strip(), value.strip()
        if key and value:
            outbound[key] = value
    return outbound


def _has_header(headers: Mapping[str, str], name: str) -> bool:
    name = name.lower()
    return any(key.lower() == name for key in headers)


def _drop_headers(headers: Dict[str, str], *names: str) -> Dict[str, str]:
    lowered = {name.lower() for name in names}
    return {key: value for key, value in headers.items() if key.lower() not in lowered}


def _decode_body(raw: bytes, charset: Optional[str]) -> str:
    try:
        return raw.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


class ProxyEngine:
    """
    Forwards client-described requests and audits every outcome.

    One aiohttp.ClientSession is shared by all calls; its connector caps
    concurrent connections globally and per destination.
    """

    def __init__(
        self,
        settings: ProxySettings,
        sessions: SessionTracker,
        audit: AuditLogger,
        metrics: Optional[MetricsCollector] = None,
        tls_policy: Optional[TlsPolicy] = None,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.audit = audit
        self.metrics = metrics
        self.tls_policy = tls_policy or tls_policy_from_settings(settings)
        self.http: Optional[aiohttp.ClientSession] = None

        logger.info(
            "Proxy engine initialized",
            pool_limit=settings.pool_limit,
            pool_limit_per_host=settings.pool_limit_per_host,
            max_redirects=settings.max_redirects,
        )

    async def start(self) -> None:
        """Open the pooled client session."""
        if self.http is not None:
            return

        connector = aiohttp.TCPConnector(
            limit=self.settings.pool_limit,
            limit_per_host=self.settings.pool_limit_per_host,
            ssl=self.tls_policy.ssl_context(),
        )
        self.http = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(
                total=None,
                connect=self.settings.connect_timeout_seconds,
                sock_read=self.settings.read_timeout_seconds,
            ),
            headers={"User-Agent": self.settings.user_agent},
        )

        logger.info("Proxy engine started")

    async def stop(self) -> None:
        """Close the pooled client session."""
        if self.http:
            await self.http.close()
            self.http = None

        logger.info("Proxy engine stopped")

    async def forward(
        self,
        request: ProxyRequest,
        session_id: Optional[str] = None,
    ) -> Tuple[ProxyResponse, str]:
        """
        Execute the described call and audit it.

        Returns the response and the session identifier the caller must
        hand back to the client. Never raises on forwarding failures.
        """
        started = time.monotonic()
        session_id = self.sessions.resolve_or_create(session_id)
        method = resolve_method(request.method)

        if self.http is None:
            await self.start()

        try:
            url = normalize_url(request.url)
            headers = build_outbound_headers(request.headers)

            data: Optional[bytes] = None
            if method in BODY_METHODS and request.body and request.body.strip():
                data = request.body.encode("utf-8")
                if not _has_header(headers, "Content-Type"):
                    headers["Content-Type"] = "application/json"

            logger.info(
                "Forwarding request",
                session_id=session_id[:8] + "...",
                method=method,
                url=mask_url(url),
            )

            status, reason, response_headers, body = await self._execute(method, url, headers, data)

        except Exception as e:
            return await self._handle_failure(session_id, method, request, e, started), session_id

        elapsed_ms = int((time.monotonic() - started) * 1000)
        response = ProxyResponse(
            status=status,
            status_text=reason,
            headers=response_headers,
            body=body,
            response_time=elapsed_ms,
            size=len(body.encode("utf-8")),
        )

        await self.audit.record(
            session_id,
            method,
            url,
            request.headers,
            request.body,
            status,
            body,
            response_headers,
            elapsed_ms,
        )

        if self.metrics:
            self.metrics.record_forward(method, status, elapsed_ms / 1000)

        logger.info(
            "Request forwarded",
            session_id=session_id[:8] + "...",
            method=method,
            status=status,
            response_time_ms=elapsed_ms,
            size_bytes=response.size,
        )

        return response, session_id

    async def _execute(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        data: Optional[bytes],
    ) -> Tuple[int, str, Dict[str, str], str]:
        """
        Run the call, following redirects manually.

        303, and 301/302 for anything but GET/HEAD, continue as a bodiless
        GET; 307/308 keep method and body.
        """
        if self.http is None:
            raise ForwardingError("Proxy engine is not started")

        current = URL(url)
        visited = {str(current)}
        redirects = 0

        while True:
            async with self.http.request(
                method,
                current,
                headers=headers,
                data=data,
                allow_redirects=False,
            ) as resp:
                location = resp.headers.get("Location")
                status = resp.status

                if status not in REDIRECT_STATUSES or not location:
                    raw = await resp.read()
                    return (
                        status,
                        resp.reason or "",
                        {key: value for key, value in resp.headers.items()},
                        _decode_body(raw, resp.charset),
                    )

                target = resp.url.join(URL(location))

            if redirects >= self.settings.max_redirects:
                raise TooManyRedirectsError(
                    f"Exceeded maximum of {self.settings.max_redirects} redirects",
                    details={"url": str(target)},
                )
            redirects += 1

            target = target.with_fragment(None)
            if str(target) in visited:
                raise CircularRedirectError(
                    f"Circular redirect to {target}",
                    details={"url": str(target)},
                )
            visited.add(str(target))

            if status == 303 or (status in (301, 302) and method not in ("GET", "HEAD")):
                method = "GET"
                data = None
                headers = _drop_headers(headers, "Content-Type", "Content-Length")

            if target.origin() != current.origin():
                headers = _drop_headers(headers, "Authorization", "Cookie")

            logger.debug("Following redirect", status=status, location=mask_url(str(target)))
            current = target

    async def _handle_failure(
        self,
        session_id: str,
        method: str,
        request: ProxyRequest,
        exc: Exception,
        started: float,
    ) -> ProxyResponse:
        """Audit a failed call and build the status-0 response."""
        elapsed_ms = int((time.monotonic() - started) * 1000)
        message = str(exc) or type(exc).__name__
        if isinstance(exc, asyncio.TimeoutError) and not str(exc):
            message = "Request timed out"

        logger.warning(
            "Forwarding failed",
            session_id=session_id[:8] + "...",
            method=method,
            url=mask_url(request.url),
            error=message,
            error_type=type(exc).__name__,
        )

        await self.audit.record_error(session_id, FORWARD_OPERATION, message, exc)

        error_body = json.dumps({"error": message, "type": type(exc).__name__})
        error_headers = {"Content-Type": "application/json"}

        await self.audit.record(
            session_id,
            method,
            request.url,
            request.headers,
            request.body,
            0,
            error_body,
            error_headers,
            elapsed_ms,
        )

        if self.metrics:
            self.metrics.record_forward(method, 0, elapsed_ms / 1000)

        return ProxyResponse(
            status=0,
            status_text=FAILED_STATUS_TEXT,
            headers=error_headers,
            body=error_body,
            response_time=elapsed_ms,
            size=0,
        )


__all__ = [
    "ForwardingError",
    "ProxyEngine",
    "TlsPolicy",
    "TrustAllTlsPolicy",
    "VerifyingTlsPolicy",
    "build_outbound_headers",
    "normalize_url",
    "resolve_method",
]
