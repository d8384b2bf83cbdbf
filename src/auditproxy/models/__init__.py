"""
Pydantic data models package.

Contains data models for:
- Proxy requests and responses
- Audit records (exchange and error)
- Log statistics
"""

from .proxy import ErrorResponse, ProxyRequest, ProxyResponse
from .records import ErrorRecord, ExchangeRecord, LogLevel, LogStatistics

__all__ = [
    # Proxy models
    "ProxyRequest",
    "ProxyResponse",
    "ErrorResponse",

    # Audit record models
    "ExchangeRecord",
    "ErrorRecord",
    "LogLevel",
    "LogStatistics",
]
