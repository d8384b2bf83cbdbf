"""
Read side of the audit logs.

Queries, aggregation, privileged decryption and retention over the files
written by AuditLogger. Missing files read as empty.

The plaintext log is parsed with a split-and-repair pass rather than line by
line so logs written before appends were serialized, where records could
run together, stay readable.
"""

import contextlib
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog
from aiofiles import open as aio_open
from pydantic import ValidationError as ModelValidationError

from ..models.records import ErrorRecord, ExchangeRecord, LogStatistics, parse_timestamp
from .audit import AuditFiles
from .crypto import CipherRegistry
from .exceptions import DecryptionError, RetentionError
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

RECORD_BOUNDARY = re.compile(r"\}\s*\n\s*\{")
TIMESTAMP_MARKER = '"timestamp":"'

DEFAULT_RECENT_LIMIT = 50
DEFAULT_ALL_LIMIT = 1000
DEFAULT_ERROR_LIMIT = 20


@dataclass
class RetireResult:
    """Outcome of retention on one file."""
    kept: int
    removed: int


def split_records(content: str) -> List[str]:
    """
    Split file content into candidate JSON objects.

    Splits on '}' newline '{' boundaries and restores the braces the split
    consumed: the first fragment gets a closing brace, the last an opening
    one and interior fragments both. A single fragment is returned as is.
    """
    if not content.strip():
        return []

    parts = RECORD_BOUNDARY.split(content)
    if len(parts) == 1:
        return [parts[0].strip()]

    fragments = []
    last = len(parts) - 1
    for i, part in enumerate(parts):
        part = part.strip()
        if not part:
            continue

        if i == 0:
            part = part + "}"
        elif i == last:
            part = "{" + part
        else:
            part = "{" + part + "}"
        fragments.append(part)

    return fragments


def extract_timestamp(line: str) -> Optional[datetime]:
    """Find the timestamp by text search, tolerating otherwise malformed lines."""
    start = line.find(TIMESTAMP_MARKER)
    if start < 0:
        return None

    start += len(TIMESTAMP_MARKER)
    end = line.find('"', start)
    if end < 0:
        return None

    try:
        return parse_timestamp(line[start:end])
    except ValueError:
        return None


def _lines(content: str) -> List[str]:
    # Records may legitimately contain U+2028 and friends, so no splitlines()
    return [line.rstrip("\r") for line in content.split("\n") if line.strip()]


class LogRepository:
    """
    Queries over the audit logs.

    Features:
    - Recent, per-session and date-range views of the plaintext log
    - Error log tail
    - Decryption of the encrypted log for privileged callers
    - Statistics over the plaintext log
    - Age-based retention across all three files
    """

    def __init__(
        self,
        files: AuditFiles,
        ciphers: CipherRegistry,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.files = files
        self.ciphers = ciphers
        self.metrics = metrics
        self._clock = clock

    async def _read(self, path: Path) -> str:
        if not path.exists():
            return ""

        async with aio_open(path, "r", encoding="utf-8", errors="replace") as f:
            return await f.read()

    async def _parse_exchanges(self, operation: str) -> List[ExchangeRecord]:
        records = []
        skipped = 0

        for fragment in split_records(await self._read(self.files.api_log)):
            try:
                records.append(ExchangeRecord.model_validate_json(fragment))
            except ModelValidationError:
                skipped += 1

        _warn_skipped(operation, skipped)
        return records

    async def recent(self, limit: int = DEFAULT_RECENT_LIMIT) -> List[ExchangeRecord]:
        """The last `limit` exchanges, oldest first."""
        records = await self._parse_exchanges("recent")
        if limit <= 0:
            return []
        return records[-limit:]

    async def all(self, limit: int = DEFAULT_ALL_LIMIT) -> List[ExchangeRecord]:
        return await self.recent(limit)

    async def by_session(self, session_id: str) -> List[ExchangeRecord]:
        records = await self._parse_exchanges("by_session")
        return [record for record in records if record.session_id == session_id]

    async def by_date_range(self, start: datetime, end: datetime) -> List[ExchangeRecord]:
        """Exchanges with start <= timestamp < end. Naive bounds are taken as UTC."""
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)

        matched = []
        for record in await self._parse_exchanges("by_date_range"):
            try:
                recorded_at = record.recorded_at
            except ValueError:
                continue
            if start <= recorded_at < end:
                matched.append(record)
        return matched

    async def errors(self, limit: int = DEFAULT_ERROR_LIMIT) -> List[ErrorRecord]:
        """Error records parsed from the last `limit` lines of the error log."""
        if limit <= 0:
            return []

        records = []
        skipped = 0
        for line in _lines(await self._read(self.files.error_log))[-limit:]:
            try:
                records.append(ErrorRecord.model_validate_json(line))
            except ModelValidationError:
                skipped += 1

        _warn_skipped("errors", skipped)
        return records

    async def decrypted(self, limit: int = DEFAULT_RECENT_LIMIT) -> List[ExchangeRecord]:
        """
        Full-fidelity exchanges from the last `limit` encrypted lines.

        Lines that fail to decrypt or parse are skipped, so this is
        best-effort after a key change.
        """
        if limit <= 0:
            return []

        records = []
        skipped = 0
        for line in _lines(await self._read(self.files.encrypted_log))[-limit:]:
            try:
                records.append(ExchangeRecord.model_validate_json(self.ciphers.decrypt_line(line)))
            except (DecryptionError, ModelValidationError):
                skipped += 1

        _warn_skipped("decrypted", skipped)
        return records

    async def statistics(self) -> LogStatistics:
        """Aggregate counts and timings in one line-oriented pass."""
        stats = LogStatistics()
        skipped = 0

        for line in _lines(await self._read(self.files.api_log)):
            try:
                record = ExchangeRecord.model_validate_json(line)
            except ModelValidationError:
                skipped += 1
                continue

            stats.total_requests += 1
            status = record.response_status
            if 200 <= status < 300:
                stats.successful_requests += 1
            elif 400 <= status < 500:
                stats.client_errors += 1
            elif status >= 500:
                stats.server_errors += 1

            stats.total_response_time += record.response_time
            method = record.method or "UNKNOWN"
            stats.method_counts[method] = stats.method_counts.get(method, 0) + 1

        if stats.total_requests:
            stats.average_response_time = stats.total_response_time // stats.total_requests

        _warn_skipped("statistics", skipped)
        return stats

    async def retire(self, max_age_days: int) -> Dict[str, RetireResult]:
        """
        Remove records older than `max_age_days` from every log file.

        Lines whose timestamp can't be read are kept. Raises RetentionError
        if a cleaned file can't be swapped in.
        """
        cutoff = self._clock() - timedelta(days=max_age_days)
        results = {}

        for path in self.files.all_logs:
            if path == self.files.encrypted_log:
                extract = self._encrypted_timestamp
            else:
                extract = extract_timestamp
            results[path.name] = await self._retire_file(path, cutoff, extract)

        logger.info(
            "Log retention completed",
            max_age_days=max_age_days,
            removed={name: result.removed for name, result in results.items()},
        )
        return results

    def _encrypted_timestamp(self, line: str) -> Optional[datetime]:
        try:
            return extract_timestamp(self.ciphers.decrypt_line(line))
        except DecryptionError:
            return None

    async def _retire_file(
        self,
        path: Path,
        cutoff: datetime,
        extract: Callable[[str], Optional[datetime]],
    ) -> RetireResult:
        async with self.files.lock(path):
            if not path.exists():
                return RetireResult(kept=0, removed=0)

            kept = []
            removed = 0
            for line in _lines(await self._read(path)):
                recorded_at = extract(line)
                if recorded_at is None or recorded_at >= cutoff:
                    kept.append(line)
                else:
                    removed += 1

            if removed:
                tmp_path = path.with_name(path.name + ".tmp")
                try:
                    async with aio_open(tmp_path, "w", encoding="utf-8") as f:
                        await f.write("".join(line + "\n" for line in kept))
                    os.replace(tmp_path, path)
                except OSError as e:
                    logger.error("Failed to replace log file", file=str(path), error=str(e))
                    with contextlib.suppress(OSError):
                        tmp_path.unlink(missing_ok=True)
                    raise RetentionError(
                        f"Failed to replace log file {path.name}",
                        details={"file": path.name, "reason": str(e)},
                    ) from e

                if self.metrics:
                    self.metrics.record_retirement(path.name, removed)

        return RetireResult(kept=len(kept), removed=removed)


def _warn_skipped(operation: str, skipped: int) -> None:
    if skipped:
        logger.warning("Skipped malformed log records", operation=operation, skipped=skipped)
