"""
Audit record models.

Field names on disk use the camelCase keys of the historical log format so
that existing log files remain readable.

- ExchangeRecord: one proxied call and its response
- ErrorRecord: one failure, written to the error log
- LogStatistics: aggregate view over the plaintext audit log
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Render a UTC timestamp as 'YYYY-MM-DD HH:MM:SS.mmm'."""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)[:-3]


def parse_timestamp(value: str) -> datetime:
    """Parse a record timestamp into an aware UTC datetime."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class LogLevel(str, Enum):
    """Severity derived from the response status."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @classmethod
    def from_status(cls, status: int) -> "LogLevel":
        if status >= 500:
            return cls.ERROR
        if status >= 400:
            return cls.WARN
        return cls.INFO


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        frozen=True,
    )


class ExchangeRecord(_CamelModel):
    """
    Audit record for a single proxied exchange.

    Immutable once built. Serialized with by_alias=True.
    """

    timestamp: str = Field(default_factory=format_timestamp)
    session_id: Optional[str] = None
    method: Optional[str] = None
    url: Optional[str] = None
    request_headers: Optional[Dict[str, Optional[str]]] = None
    request_body: Optional[str] = None
    response_status: int = 0
    response_body: Optional[str] = None
    response_headers: Optional[Dict[str, Optional[str]]] = None
    response_time: int = 0
    log_level: LogLevel = LogLevel.INFO

    def to_line(self) -> str:
        """Compact single-line JSON form used on disk."""
        return self.model_dump_json(by_alias=True)

    @property
    def recorded_at(self) -> datetime:
        return parse_timestamp(self.timestamp)


class ErrorRecord(_CamelModel):
    """Audit record for a failure."""

    timestamp: str = Field(default_factory=format_timestamp)
    session_id: Optional[str] = None
    operation: str
    error: Optional[str] = None
    exception_class: str = "Unknown"
    stack_trace: str = "No stack trace available"

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True)


class LogStatistics(BaseModel):
    """Aggregates over the plaintext audit log."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_requests: int = 0
    successful_requests: int = 0
    client_errors: int = 0
    server_errors: int = 0
    total_response_time: int = 0
    average_response_time: int = 0
    method_counts: Dict[str, int] = Field(default_factory=dict)
