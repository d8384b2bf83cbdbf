"""
AuditProxy - audited HTTP forwarding service

A FastAPI-based service that executes client-described HTTP calls and
records every exchange twice: masked in plaintext, and encrypted in full
for privileged retrieval.
"""

__version__ = "0.1.0"

from .main import app

__all__ = ["app"]
