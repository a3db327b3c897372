"""Periodic housekeeping: expire overdue sessions and drop dead one-time codes.

Correctness never depends on this task; every access path re-checks session
liveness itself. The sweep keeps the tables tidy and records expiries in the
audit trail promptly.
"""

import asyncio
import logging
from dataclasses import dataclass, field

import asyncpg

from ..audit.logger import AuditLogger
from ..audit.models import ActorRole, AuditEvent, AuditEventType, EmergencySessionExpiredDetails
from .models import EmergencySession
from .otp import OneTimeCodeManager
from .session_store import EmergencySessionStore

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0


@dataclass
class SweepResult:
    expired_sessions: list[EmergencySession] = field(default_factory=list)
    removed_codes: int = 0


class SessionSweeper:
    def __init__(
        self,
        pool: asyncpg.Pool,
        store: EmergencySessionStore,
        otp: OneTimeCodeManager | None = None,
        audit_logger: AuditLogger | None = None,
        interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self._pool = pool
        self._store = store
        self._otp = otp
        self._audit_logger = audit_logger
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in session sweep: %s", e)

    async def run_once(self) -> SweepResult:
        result = SweepResult()
        async with self._pool.acquire() as conn:
            result.expired_sessions = await self._store.expire_overdue(conn)
            if self._otp is not None:
                result.removed_codes = await self._otp.cleanup_expired(conn)

        if self._audit_logger:
            for session in result.expired_sessions:
                await self._audit_logger.record(
                    AuditEvent(
                        event_type=AuditEventType.EMERGENCY_SESSION_EXPIRED,
                        actor_role=ActorRole.SYSTEM,
                        patient_id=session.target_id,
                        details=EmergencySessionExpiredDetails(
                            session_id=str(session.session_id),
                            expires_at=session.expires_at.isoformat(),
                            detected_by="sweep",
                        ),
                    )
                )
        return result
