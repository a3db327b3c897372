"""Audit log retention.

Audit rows are append-only; the immutability trigger rejects every UPDATE
and DELETE. The one exception is the administrative purge below, which sets
the transaction-local flag ``epatient_access.audit_purge`` that the trigger
checks before letting a DELETE through. The flag disappears at commit.

Healthcare retention rules (HIPAA 45 CFR 164.316(b)(2)(i)) ask for six years,
so by default nothing younger than that can be purged.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import asyncpg

from ..clock import Clock, SystemClock
from .logger import AuditLogger
from .models import ActorRole, AuditEvent, AuditEventType, AuditPurgedDetails

logger = logging.getLogger(__name__)

MINIMUM_RETENTION_YEARS = 6
MINIMUM_RETENTION_DAYS = MINIMUM_RETENTION_YEARS * 365


@dataclass
class RetentionStatus:
    total_events: int
    oldest_event: datetime | None
    newest_event: datetime | None
    purgeable_events: int
    minimum_retention_days: int = MINIMUM_RETENTION_DAYS

    def to_dict(self) -> dict:
        return {
            "total_events": self.total_events,
            "oldest_event": self.oldest_event.isoformat() if self.oldest_event else None,
            "newest_event": self.newest_event.isoformat() if self.newest_event else None,
            "purgeable_events": self.purgeable_events,
            "minimum_retention_days": self.minimum_retention_days,
        }


@dataclass
class PurgeResult:
    cutoff: datetime
    deleted_count: int


class AuditRetentionManager:
    def __init__(self, audit_logger: AuditLogger | None = None, clock: Clock | None = None):
        self._audit_logger = audit_logger
        self._clock = clock or SystemClock()

    def cutoff_for(self, older_than_days: int) -> datetime:
        return self._clock.now() - timedelta(days=older_than_days)

    async def get_retention_status(self, conn: asyncpg.Connection) -> RetentionStatus:
        row = await conn.fetchrow(
            """
            SELECT
                COUNT(*) AS total_events,
                MIN(event_time) AS oldest_event,
                MAX(event_time) AS newest_event,
                COUNT(*) FILTER (WHERE event_time < $1) AS purgeable_events
            FROM access_audit_log
            """,
            self.cutoff_for(MINIMUM_RETENTION_DAYS),
        )
        return RetentionStatus(
            total_events=row["total_events"] or 0,
            oldest_event=row["oldest_event"],
            newest_event=row["newest_event"],
            purgeable_events=row["purgeable_events"] or 0,
        )

    async def purge(
        self,
        conn: asyncpg.Connection,
        older_than_days: int,
        purged_by: str | None = None,
        enforce_minimum: bool = True,
    ) -> PurgeResult:
        """Delete audit events older than ``older_than_days``.

        Args:
            conn: Database connection
            older_than_days: Age threshold in days
            purged_by: Identity of the administrator running the purge
            enforce_minimum: Refuse thresholds inside the six-year retention window

        Returns:
            PurgeResult with the cutoff used and number of rows deleted

        Raises:
            ValueError: If older_than_days is not positive, or is below the
                retention minimum while enforce_minimum is set.
        """
        if older_than_days < 1:
            raise ValueError(f"older_than_days must be positive, got {older_than_days}")
        if enforce_minimum and older_than_days < MINIMUM_RETENTION_DAYS:
            raise ValueError(
                f"Audit events must be retained for at least {MINIMUM_RETENTION_DAYS} days "
                f"({MINIMUM_RETENTION_YEARS} years). Requested: {older_than_days} days."
            )

        cutoff = self.cutoff_for(older_than_days)

        async with conn.transaction():
            await conn.execute("SELECT set_config('epatient_access.audit_purge', 'on', true)")
            status = await conn.execute(
                "DELETE FROM access_audit_log WHERE event_time < $1",
                cutoff,
            )

        deleted = int(status.split()[-1]) if status else 0
        logger.warning(
            "Purged %d audit events older than %s (by %s)",
            deleted,
            cutoff.isoformat(),
            purged_by or "system",
        )

        if self._audit_logger:
            await self._audit_logger.record(
                AuditEvent(
                    event_type=AuditEventType.AUDIT_PURGED,
                    actor_id=purged_by,
                    actor_role=ActorRole.OPERATOR if purged_by else ActorRole.SYSTEM,
                    details=AuditPurgedDetails(cutoff=cutoff.isoformat(), deleted_count=deleted),
                )
            )

        return PurgeResult(cutoff=cutoff, deleted_count=deleted)
