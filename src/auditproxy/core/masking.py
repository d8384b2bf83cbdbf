"""
Sensitive data masking.

Redacts header values by name and `key separator value` occurrences in
free text. Runs before plaintext persistence so no sensitive value reaches
the masked audit log.
"""

import re
from typing import Dict, List, Mapping, Optional, Pattern

MASK = "***MASKED***"

# Headers whose values are always replaced
SENSITIVE_HEADERS = frozenset({
    "authorization",
    "x-api-key",
    "x-auth-token",
    "cookie",
    "set-cookie",
    "x-access-token",
    "x-refresh-token",
    "bearer",
    "basic",
})

# A closing quote may sit between key and separator: "password": "x"
_SEPARATOR = r"""["']?\s*[:=]\s*"""
# Quoted values run up to their unescaped closing quote, which is kept, or the end of
# the line; bare values stop at a delimiter
_TOKEN_VALUE = r""""(?:[^"\\\n]|\\.)*|'(?:[^'\\\n]|\\.)*|[^\s,&"'\]}]+"""


def _pattern(keys: str, value: str) -> "Pattern[str]":
    return re.compile(rf"({keys}){_SEPARATOR}(?:{value})", re.IGNORECASE)


SENSITIVE_PATTERNS: List["Pattern[str]"] = [
    _pattern(r"password|pwd|pass", _TOKEN_VALUE),
    _pattern(r"token|auth|authorization|bearer", rf"(?:(?:bearer|basic)\s+)?(?:{_TOKEN_VALUE})"),
    _pattern(r"api[_-]?key|apikey|key", _TOKEN_VALUE),
    _pattern(r"secret|private[_-]?key", _TOKEN_VALUE),
    _pattern(r"credit[_-]?card|card[_-]?number|ccn", r"""["']?\d(?:[\d \t-]*\d)?"""),
    _pattern(r"ssn|social[_-]?security", r"""["']?\d[\d-]*"""),
    _pattern(r"email|e[_-]?mail", r"""["']?[\w.+-]+@[\w.-]+\.[a-zA-Z]{2,}"""),
    _pattern(r"phone|tel|mobile", r"""["']?[\d+(](?:[\d \t+\-()]*[\d)])?"""),
]


def mask_text(data: Optional[str]) -> Optional[str]:
    """
    Mask sensitive key/value occurrences in free text.

    Each match keeps its key and becomes `key=***MASKED***`. Text without
    a match is returned unchanged.
    """
    if data is None or not data.strip():
        return data

    masked = data
    for pattern in SENSITIVE_PATTERNS:
        masked = pattern.sub(rf"\1={MASK}", masked)
    return masked


def mask_url(url: Optional[str]) -> Optional[str]:
    """Mask sensitive query-string values (and any other key=value runs) in a URL."""
    return mask_text(url)


def mask_headers(headers: Optional[Mapping[str, Optional[str]]]) -> Optional[Dict[str, Optional[str]]]:
    """Replace values of sensitive headers; all other headers pass through."""
    if headers is None:
        return None

    masked: Dict[str, Optional[str]] = {}
    for key, value in headers.items():
        if is_sensitive_header(key):
            masked[key] = MASK
        else:
            masked[key] = value
    return masked


def is_sensitive_header(name: str) -> bool:
    return name.lower() in SENSITIVE_HEADERS
