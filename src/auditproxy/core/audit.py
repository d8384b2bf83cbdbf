"""
Dual-format audit logger.

Every exchange is written twice:
- masked, as one JSON line in the plaintext audit log
- unmasked, encrypted, as one line in the encrypted audit log

Failures go to a separate error log. Logging is best-effort: nothing here
raises into the request path.
"""

import asyncio
import traceback
from pathlib import Path
from typing import Dict, Mapping, Optional

import structlog
from aiofiles import open as aio_open

from ..config import AuditSettings
from ..models.records import ErrorRecord, ExchangeRecord, LogLevel, format_timestamp
from .crypto import CipherRegistry
from .masking import mask_headers, mask_text, mask_url
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

Headers = Optional[Mapping[str, Optional[str]]]


class AuditFiles:
    """
    Locations of the audit log files and one write lock per file.

    Writers and the retention pass share these locks so appends to a file
    are serialized and never interleave.
    """

    def __init__(self, settings: AuditSettings) -> None:
        self.log_dir = Path(settings.log_dir)
        self.api_log = self.log_dir / settings.api_log_file
        self.encrypted_log = self.log_dir / settings.encrypted_log_file
        self.error_log = self.log_dir / settings.error_log_file
        self.key_file = self.log_dir / settings.key_file
        self._locks: Dict[Path, asyncio.Lock] = {
            self.api_log: asyncio.Lock(),
            self.encrypted_log: asyncio.Lock(),
            self.error_log: asyncio.Lock(),
        }

        self._ensure_log_dir()

    def _ensure_log_dir(self) -> None:
        """Create log directory if it doesn't exist."""
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Error creating log directory", log_dir=str(self.log_dir), error=str(e))
            raise

    def lock(self, path: Path) -> asyncio.Lock:
        return self._locks[path]

    @property
    def all_logs(self) -> tuple:
        return (self.api_log, self.encrypted_log, self.error_log)


def format_trace(exc: BaseException) -> str:
    """Flatten an exception into its message followed by tab-indented frames."""
    lines = [str(exc)]
    for frame in traceback.extract_tb(exc.__traceback__):
        lines.append(f"\tat {frame.name} ({frame.filename}:{frame.lineno})")
    return "\n".join(lines) + "\n"


class AuditLogger:
    """
    Persists exchange and error records.

    Features:
    - Masking of URL, bodies and headers before plaintext persistence
    - Encrypted full-fidelity copy through a pluggable cipher
    - Serialized appends per file
    """

    def __init__(
        self,
        files: AuditFiles,
        ciphers: CipherRegistry,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.files = files
        self.ciphers = ciphers
        self.metrics = metrics

        logger.info(
            "Audit logger initialized",
            log_dir=str(files.log_dir),
            cipher=ciphers.active.version,
        )

    async def record(
        self,
        session_id: Optional[str],
        method: Optional[str],
        url: Optional[str],
        request_headers: Headers,
        request_body: Optional[str],
        status: int,
        response_body: Optional[str],
        response_headers: Headers,
        elapsed_ms: int,
    ) -> None:
        """
        Record one exchange in both audit logs.

        Callers pass unmasked values; masking applies to the plaintext copy
        only. The two appends are independent, so a crash between them leaves
        the exchange in one log and not the other.
        """
        try:
            timestamp = format_timestamp()
            level = LogLevel.from_status(status)

            masked = ExchangeRecord(
                timestamp=timestamp,
                session_id=session_id,
                method=method,
                url=mask_url(url),
                request_headers=mask_headers(request_headers),
                request_body=mask_text(request_body),
                response_status=status,
                response_body=mask_text(response_body),
                response_headers=mask_headers(response_headers),
                response_time=elapsed_ms,
                log_level=level,
            )
            await self._append(self.files.api_log, masked.to_line())

            original = ExchangeRecord(
                timestamp=timestamp,
                session_id=session_id,
                method=method,
                url=url,
                request_headers=dict(request_headers) if request_headers is not None else None,
                request_body=request_body,
                response_status=status,
                response_body=response_body,
                response_headers=dict(response_headers) if response_headers is not None else None,
                response_time=elapsed_ms,
                log_level=level,
            )
            await self._append(self.files.encrypted_log, self.ciphers.encrypt_line(original.to_line()))

        except Exception as e:
            logger.error(
                "Failed to record exchange",
                session_id=_short(session_id),
                method=method,
                error=str(e),
                error_type=type(e).__name__,
            )
            if self.metrics:
                self.metrics.record_audit_failure("exchange")

    async def record_error(
        self,
        session_id: Optional[str],
        operation: str,
        message: Optional[str],
        exc: Optional[BaseException] = None,
    ) -> None:
        """Record a failure in the error log. Never raises."""
        try:
            entry = ErrorRecord(
                session_id=session_id,
                operation=operation,
                error=message,
                exception_class=type(exc).__name__ if exc is not None else "Unknown",
                stack_trace=format_trace(exc) if exc is not None else "No stack trace available",
            )
            await self._append(self.files.error_log, entry.to_line())

        except Exception as e:
            logger.error(
                "Failed to record error",
                session_id=_short(session_id),
                operation=operation,
                error=str(e),
            )
            if self.metrics:
                self.metrics.record_audit_failure("error")

    async def _append(self, path: Path, line: str) -> None:
        async with self.files.lock(path):
            async with aio_open(path, "a", encoding="utf-8") as f:
                await f.write(line + "\n")
                await f.flush()


def _short(value: Optional[str]) -> str:
    if not value:
        return "none"
    return value[:8] + "..."
