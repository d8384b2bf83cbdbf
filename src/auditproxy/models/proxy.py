"""
Proxy request/response models.

The request description a client submits and the result returned to it.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ProxyRequest(BaseModel):
    """Outbound call description submitted by a client."""

    url: str = Field(min_length=1, description="Target URL; https:// is assumed when no scheme is given")
    method: Optional[str] = Field(default="GET", description="HTTP method")
    headers: Optional[Dict[str, Optional[str]]] = Field(default=None, description="Request headers")
    body: Optional[str] = Field(default=None, description="Request body")


class ProxyResponse(BaseModel):
    """Result of a forwarded call. status 0 means the call did not complete."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: int
    status_text: str
    headers: Optional[Dict[str, str]] = None
    body: str = ""
    response_time: int = 0
    size: int = 0


class ErrorResponse(BaseModel):
    """
    Standard error response model.
    """

    error: str = Field(description="Error code")
    message: str = Field(description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )
