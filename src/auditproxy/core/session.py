"""
Session tracking for correlating audit records.

Sessions are opaque identifiers with a sliding idle timeout. A background
task sweeps expired sessions; it is started and stopped with the app.
"""

import asyncio
import secrets
import string
import time
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

SESSION_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits


class SessionTracker:
    """
    Issues session identifiers and tracks their last access.

    The table is only touched from synchronous code paths, so every lookup,
    insert and eviction completes without yielding to other tasks.
    """

    def __init__(
        self,
        timeout_seconds: float = 30 * 60,
        sweep_interval_seconds: float = 5 * 60,
        id_length: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.id_length = id_length
        self._clock = clock
        self._sessions: Dict[str, float] = {}
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False

        logger.info(
            "Session tracker initialized",
            timeout_seconds=timeout_seconds,
            sweep_interval_seconds=sweep_interval_seconds,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _generate_id(self) -> str:
        return "".join(secrets.choice(SESSION_ALPHABET) for _ in range(self.id_length))

    def create_session(self) -> str:
        """Register and return a new random session identifier."""
        session_id = self._generate_id()
        while session_id in self._sessions:
            session_id = self._generate_id()

        self._sessions[session_id] = self._clock()
        logger.debug("Session created", session_id=session_id[:8] + "...")
        return session_id

    def resolve_or_create(self, candidate: Optional[str]) -> str:
        """Refresh and return a known session, otherwise create a new one."""
        if candidate and candidate in self._sessions:
            self._sessions[candidate] = self._clock()
            return candidate
        return self.create_session()

    def is_valid(self, session_id: Optional[str]) -> bool:
        """
        Check a session without refreshing it.

        An expired session is evicted as a side effect.
        """
        if session_id is None:
            return False

        last_access = self._sessions.get(session_id)
        if last_access is None:
            return False

        if self._clock() - last_access > self.timeout_seconds:
            self._sessions.pop(session_id, None)
            return False

        return True

    def sweep_expired(self) -> int:
        """Remove every session idle beyond the timeout. Returns the number removed."""
        now = self._clock()
        expired = [
            session_id
            for session_id, last_access in list(self._sessions.items())
            if now - last_access > self.timeout_seconds
        ]
        for session_id in expired:
            self._sessions.pop(session_id, None)
        return len(expired)

    async def start(self) -> None:
        """Start the background sweep."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_sweep_loop())

        logger.info("Session sweep started")

    async def stop(self) -> None:
        """Stop the background sweep."""
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Session sweep stopped")

    async def _run_sweep_loop(self) -> None:
        """Main sweep loop."""
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)

                removed = self.sweep_expired()
                if removed:
                    logger.info("Expired sessions removed", removed=removed, active=len(self._sessions))

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Session sweep error", error=str(e))
