"""
Core business logic components.

This package contains the audited proxy components:
- Session tracking
- Sensitive data masking
- Audit logging with encrypted copies
- Request forwarding
- Log queries, statistics and retention
- Access control for decrypted logs
- Metrics collection
"""
