"""
Access control for decrypted audit logs.

Authorization and per-source rate limiting. Callers authorize first and
only then consume rate budget, so rejected callers never use it up.
"""

import hashlib
import ipaddress
import secrets
import time
from typing import Callable, Dict, Optional, Tuple

import structlog

from ..config import SecuritySettings

logger = structlog.get_logger(__name__)

LOOPBACK_NAMES = frozenset({"localhost", "127.0.0.1", "::1"})


def hash_admin_key(admin_key: str) -> str:
    """Stored form of an admin key: 'sha256:<hex digest>'."""
    return "sha256:" + hashlib.sha256(admin_key.encode("utf-8")).hexdigest()


def _matches(candidate: Optional[str], expected: str) -> bool:
    if not candidate or not expected:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


class AccessGuard:
    """
    Decides who may read decrypted logs and how often.

    Rate limiting uses fixed hourly buckets keyed by source. The bucket table
    is cleared wholesale once it grows past its size cap.
    """

    def __init__(
        self,
        settings: SecuritySettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._counts: Dict[Tuple[str, int], int] = {}

    def authorize(
        self,
        bearer_token: Optional[str] = None,
        admin_key: Optional[str] = None,
        source_is_local: bool = False,
        local_auth: Optional[str] = None,
    ) -> bool:
        """
        Any one of three independent credentials grants access:
        the decryption bearer token, an admin key whose hash matches the
        stored hash, or the development token from a loopback source.
        """
        if _matches(bearer_token, self.settings.decryption_token):
            logger.info("Decrypted log access authorized", method="bearer")
            return True

        if admin_key and _matches(hash_admin_key(admin_key), self.settings.admin_key_hash):
            logger.info("Decrypted log access authorized", method="admin_key")
            return True

        if source_is_local and _matches(local_auth, self.settings.local_dev_token):
            logger.info("Decrypted log access authorized", method="local_dev")
            return True

        logger.warning(
            "Decrypted log access denied",
            has_bearer=bool(bearer_token),
            has_admin_key=bool(admin_key),
            source_is_local=source_is_local,
        )
        return False

    def _bucket(self) -> int:
        return int(self._clock() // self.settings.rate_window_seconds)

    def check_rate(self, source: str) -> bool:
        """Count one request from `source`; False once the bucket is full."""
        key = (source, self._bucket())
        count = self._counts.get(key, 0)
        if count >= self.settings.decrypt_rate_limit:
            logger.warning(
                "Decrypted log rate limit exceeded",
                source=source,
                limit=self.settings.decrypt_rate_limit,
            )
            return False

        self._counts[key] = count + 1

        if len(self._counts) > self.settings.rate_table_max_entries:
            logger.info("Rate table reset", entries=len(self._counts))
            self._counts.clear()

        return True

    def retry_after(self) -> int:
        """Seconds until the next rate bucket opens."""
        window = self.settings.rate_window_seconds
        return max(1, int(window - (self._clock() % window)))

    @staticmethod
    def is_loopback(host: Optional[str]) -> bool:
        if not host:
            return False
        if host in LOOPBACK_NAMES:
            return True
        try:
            return ipaddress.ip_address(host).is_loopback
        except ValueError:
            return False
