"""Persistence and lifecycle of emergency sessions.

The store is the single source of truth for whether a break-glass override
is still valid. Status only ever moves ACTIVE -> EXPIRED or ACTIVE -> REVOKED,
and expires_at is fixed when the session is created.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import asyncpg

from ..clock import Clock, SystemClock
from ..config import AccessConfig
from .errors import SessionFailure, SessionStoreError
from .models import AuthMethod, EmergencySession, Role

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 2

SESSION_COLUMNS = """
    session_id, requester_id, target_id, method, reason, hospital_name,
    granted_at, expires_at, status, ended_at, revoked_by
"""


@dataclass
class LivenessCheck:
    live: bool
    session: EmergencySession | None
    expired_now: bool = False


def _session(row) -> EmergencySession:
    return EmergencySession.from_db_row(dict(row))


class EmergencySessionStore:
    def __init__(self, config: AccessConfig | None = None, clock: Clock | None = None):
        self._config = config or AccessConfig()
        self._clock = clock or SystemClock()

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self._config.emergency_session_minutes)

    async def create(
        self,
        conn: asyncpg.Connection,
        requester_id: str,
        target_id: str,
        method: AuthMethod,
        reason: str,
        hospital_name: str | None = None,
    ) -> EmergencySession:
        """Create an ACTIVE session for (requester, target).

        The duplicate check and the insert run in one transaction that holds an
        advisory lock on the pair; the partial unique index on ACTIVE rows
        backs this up at the storage level.

        Raises:
            SessionStoreError: REQUESTER_NOT_FOUND, TARGET_NOT_FOUND,
                TARGET_INACTIVE or DUPLICATE_ACTIVE_SESSION (with ``existing``).
        """
        # Whole seconds, so that a token's exp never falls before expires_at.
        now = self._clock.now().replace(microsecond=0)

        for attempt in range(CREATE_ATTEMPTS):
            try:
                row = await self._insert_active(
                    conn, requester_id, target_id, method, reason, hospital_name, now
                )
                break
            except asyncpg.UniqueViolationError:
                existing = await self._find_active(conn, requester_id, target_id)
                if existing is not None or attempt == CREATE_ATTEMPTS - 1:
                    raise SessionStoreError(
                        SessionFailure.DUPLICATE_ACTIVE_SESSION, existing=existing
                    ) from None
                logger.info(
                    "Concurrent session for %s -> %s ended before it could be reused; retrying",
                    requester_id,
                    target_id,
                )

        session = _session(row)
        logger.info(
            "Emergency session %s created for %s -> %s (expires %s)",
            session.session_id,
            requester_id,
            target_id,
            session.expires_at.isoformat(),
        )
        return session

    async def _insert_active(
        self,
        conn: asyncpg.Connection,
        requester_id: str,
        target_id: str,
        method: AuthMethod,
        reason: str,
        hospital_name: str | None,
        now: datetime,
    ):
        async with conn.transaction():
            requester = await conn.fetchrow(
                "SELECT role FROM identities WHERE identity_id = $1", requester_id
            )
            if requester is None or requester["role"] != Role.DOCTOR.value:
                raise SessionStoreError(SessionFailure.REQUESTER_NOT_FOUND)

            target = await conn.fetchrow(
                "SELECT role, retired_at FROM identities WHERE identity_id = $1", target_id
            )
            if target is None or target["role"] != Role.PATIENT.value:
                raise SessionStoreError(SessionFailure.TARGET_NOT_FOUND)
            if target["retired_at"] is not None:
                raise SessionStoreError(SessionFailure.TARGET_INACTIVE)

            await conn.execute(
                "SELECT pg_advisory_xact_lock(hashtextextended($1, 0))",
                f"emergency:{requester_id}:{target_id}",
            )

            await conn.execute(
                """
                UPDATE emergency_sessions
                SET status = 'EXPIRED', ended_at = $3
                WHERE requester_id = $1 AND target_id = $2
                  AND status = 'ACTIVE' AND expires_at <= $3
                """,
                requester_id,
                target_id,
                now,
            )

            existing = await conn.fetchrow(
                f"""
                SELECT {SESSION_COLUMNS} FROM emergency_sessions
                WHERE requester_id = $1 AND target_id = $2 AND status = 'ACTIVE'
                """,
                requester_id,
                target_id,
            )
            if existing is not None:
                raise SessionStoreError(
                    SessionFailure.DUPLICATE_ACTIVE_SESSION, existing=_session(existing)
                )

            return await conn.fetchrow(
                f"""
                INSERT INTO emergency_sessions (
                    session_id, requester_id, target_id, method, reason,
                    hospital_name, granted_at, expires_at, status
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'ACTIVE')
                RETURNING {SESSION_COLUMNS}
                """,
                uuid4(),
                requester_id,
                target_id,
                method.value,
                reason,
                hospital_name,
                now,
                now + self.session_ttl,
            )

    async def _find_active(
        self, conn: asyncpg.Connection, requester_id: str, target_id: str
    ) -> EmergencySession | None:
        row = await conn.fetchrow(
            f"""
            SELECT {SESSION_COLUMNS} FROM emergency_sessions
            WHERE requester_id = $1 AND target_id = $2 AND status = 'ACTIVE'
            """,
            requester_id,
            target_id,
        )
        return _session(row) if row else None

    async def get(self, conn: asyncpg.Connection, session_id: UUID) -> EmergencySession:
        row = await conn.fetchrow(
            f"SELECT {SESSION_COLUMNS} FROM emergency_sessions WHERE session_id = $1",
            session_id,
        )
        if not row:
            raise SessionStoreError(SessionFailure.NOT_FOUND, "Emergency session not found")
        return _session(row)

    async def revoke(
        self,
        conn: asyncpg.Connection,
        session_id: UUID,
        revoked_by: str | None = None,
    ) -> EmergencySession:
        """Move an ACTIVE session to REVOKED.

        Raises:
            SessionStoreError: NOT_FOUND, or ALREADY_TERMINAL if the session
                is EXPIRED or REVOKED.
        """
        row = await conn.fetchrow(
            f"""
            UPDATE emergency_sessions
            SET status = 'REVOKED', ended_at = $2, revoked_by = $3
            WHERE session_id = $1 AND status = 'ACTIVE'
            RETURNING {SESSION_COLUMNS}
            """,
            session_id,
            self._clock.now(),
            revoked_by,
        )
        if row:
            session = _session(row)
            logger.warning("Emergency session %s revoked by %s", session_id, revoked_by or "system")
            return session

        current = await self.get(conn, session_id)
        raise SessionStoreError(
            SessionFailure.ALREADY_TERMINAL,
            f"Emergency session is already {current.status.value}",
            existing=current,
        )

    async def check_liveness(self, conn: asyncpg.Connection, session_id: UUID) -> LivenessCheck:
        """Report liveness, expiring an overdue ACTIVE session on the way.

        The ACTIVE -> EXPIRED flip is a single compare-and-set, so exactly one
        caller sees ``expired_now``.
        """
        now = self._clock.now()
        row = await conn.fetchrow(
            f"""
            UPDATE emergency_sessions
            SET status = 'EXPIRED', ended_at = $2
            WHERE session_id = $1 AND status = 'ACTIVE' AND expires_at <= $2
            RETURNING {SESSION_COLUMNS}
            """,
            session_id,
            now,
        )
        if row:
            logger.info("Emergency session %s expired", session_id)
            return LivenessCheck(live=False, session=_session(row), expired_now=True)

        row = await conn.fetchrow(
            f"SELECT {SESSION_COLUMNS} FROM emergency_sessions WHERE session_id = $1",
            session_id,
        )
        if not row:
            return LivenessCheck(live=False, session=None)

        session = _session(row)
        return LivenessCheck(live=session.is_live_at(now), session=session)

    async def is_live(self, conn: asyncpg.Connection, session_id: UUID) -> bool:
        return (await self.check_liveness(conn, session_id)).live

    async def active_for(
        self, conn: asyncpg.Connection, requester_id: str
    ) -> list[EmergencySession]:
        rows = await conn.fetch(
            f"""
            SELECT {SESSION_COLUMNS} FROM emergency_sessions
            WHERE requester_id = $1 AND status = 'ACTIVE' AND expires_at > $2
            ORDER BY granted_at DESC
            """,
            requester_id,
            self._clock.now(),
        )
        return [_session(row) for row in rows]

    async def history_for(
        self,
        conn: asyncpg.Connection,
        target_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[EmergencySession]:
        rows = await conn.fetch(
            f"""
            SELECT {SESSION_COLUMNS} FROM emergency_sessions
            WHERE target_id = $1
            ORDER BY granted_at DESC
            LIMIT $2 OFFSET $3
            """,
            target_id,
            limit,
            offset,
        )
        return [_session(row) for row in rows]

    async def expire_overdue(self, conn: asyncpg.Connection) -> list[EmergencySession]:
        """Flip every overdue ACTIVE session to EXPIRED."""
        rows = await conn.fetch(
            f"""
            UPDATE emergency_sessions
            SET status = 'EXPIRED', ended_at = $1
            WHERE status = 'ACTIVE' AND expires_at <= $1
            RETURNING {SESSION_COLUMNS}
            """,
            self._clock.now(),
        )
        expired = [_session(row) for row in rows]
        if expired:
            logger.info("Expired %d overdue emergency sessions", len(expired))
        return expired
