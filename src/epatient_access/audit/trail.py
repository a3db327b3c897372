"""Read side of the audit trail: filtered queries, dashboard stats and CSV export.

Nothing here updates or deletes audit rows.
"""

import csv
import io
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

import asyncpg

from ..clock import Clock, SystemClock
from .logger import AuditLogger
from .models import ActorRole, AuditEvent, AuditEventType, AuditExportedDetails

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500
DEFAULT_EXPORT_LIMIT = 100_000
VALID_BUCKETS = {"hour", "day", "week", "month"}

EXPORT_COLUMNS = [
    "Event ID",
    "Timestamp",
    "Actor ID",
    "Actor Name",
    "Actor Role",
    "Patient ID",
    "Patient Name",
    "Event Type",
    "Outcome",
    "Details",
]

SELECT_SQL = """
    SELECT l.audit_id, l.event_id, l.event_time, l.event_type::text AS event_type,
           l.actor_id, l.actor_role, l.patient_id, l.success, l.details,
           host(l.client_ip) AS client_ip, l.client_hostname, l.application_name,
           l.request_id,
           a.display_name AS actor_name, p.display_name AS patient_name
    FROM access_audit_log l
    LEFT JOIN identities a ON a.identity_id = l.actor_id
    LEFT JOIN identities p ON p.identity_id = l.patient_id
"""


@dataclass
class AuditFilters:
    patient_id: str | None = None
    actor_id: str | None = None
    actor_role: ActorRole | None = None
    event_type: AuditEventType | None = None
    start: datetime | None = None
    end: datetime | None = None
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError(f"page must be at least 1, got {self.page}")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {self.page_size}")
        if self.start and self.end and self.start > self.end:
            raise ValueError("start must be before end")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def where_clause(self, alias: str = "l") -> tuple[str, list]:
        conditions = []
        params: list = []

        def add(condition: str, value) -> None:
            params.append(value)
            conditions.append(condition.format(alias=alias, n=len(params)))

        if self.patient_id:
            add("{alias}.patient_id = ${n}", self.patient_id)
        if self.actor_id:
            add("{alias}.actor_id = ${n}", self.actor_id)
        if self.actor_role:
            add("{alias}.actor_role = ${n}", self.actor_role.value)
        if self.event_type:
            add("{alias}.event_type = ${n}::access_audit_event_type", self.event_type.value)
        if self.start:
            add("{alias}.event_time >= ${n}", self.start)
        if self.end:
            add("{alias}.event_time <= ${n}", self.end)

        clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return clause, params

    def to_dict(self) -> dict:
        return {
            "patient_id": self.patient_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value if self.actor_role else None,
            "event_type": self.event_type.value if self.event_type else None,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


@dataclass
class AuditRecord:
    audit_id: int
    event: AuditEvent
    actor_name: str | None = None
    patient_name: str | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "AuditRecord":
        row = dict(row)
        if isinstance(row.get("details"), str):
            row["details"] = json.loads(row["details"])
        return cls(
            audit_id=row["audit_id"],
            event=AuditEvent.from_db_row(row),
            actor_name=row.get("actor_name"),
            patient_name=row.get("patient_name"),
        )

    def to_dict(self) -> dict:
        event = self.event
        return {
            "audit_id": self.audit_id,
            "event_id": str(event.event_id),
            "event_time": event.event_time.isoformat() if event.event_time else None,
            "event_type": event.event_type.value,
            "actor_id": event.actor_id,
            "actor_name": self.actor_name,
            "actor_role": event.actor_role.value,
            "patient_id": event.patient_id,
            "patient_name": self.patient_name,
            "success": event.success,
            "details": asdict(event.details),
            "request_id": str(event.request_id) if event.request_id else None,
        }


@dataclass
class AuditPage:
    records: list[AuditRecord]
    total: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


@dataclass
class AuditStats:
    total: int = 0
    unique_actors: int = 0
    unique_patients: int = 0
    failures: int = 0
    last_24h: int = 0
    by_event_type: dict[str, int] = field(default_factory=dict)
    by_role: dict[str, int] = field(default_factory=dict)
    by_bucket: list[tuple[datetime, int]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "unique_actors": self.unique_actors,
            "unique_patients": self.unique_patients,
            "failures": self.failures,
            "last_24h": self.last_24h,
            "by_event_type": self.by_event_type,
            "by_role": self.by_role,
            "by_bucket": [[bucket.isoformat(), count] for bucket, count in self.by_bucket],
        }


class AuditTrail:
    def __init__(self, audit_logger: AuditLogger | None = None, clock: Clock | None = None):
        self._audit_logger = audit_logger
        self._clock = clock or SystemClock()

    async def query(self, conn: asyncpg.Connection, filters: AuditFilters) -> AuditPage:
        """Filtered page of events, newest first."""
        where, params = filters.where_clause()

        total = await conn.fetchval(
            f"SELECT COUNT(*) FROM access_audit_log l {where}",
            *params,
        )
        rows = await conn.fetch(
            f"""
            {SELECT_SQL}
            {where}
            ORDER BY l.event_time DESC, l.audit_id DESC
            LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
            """,
            *params,
            filters.page_size,
            filters.offset,
        )
        return AuditPage(
            records=[AuditRecord.from_db_row(row) for row in rows],
            total=total or 0,
            page=filters.page,
            page_size=filters.page_size,
        )

    async def stats(
        self,
        conn: asyncpg.Connection,
        filters: AuditFilters | None = None,
        bucket: str = "day",
    ) -> AuditStats:
        if bucket not in VALID_BUCKETS:
            raise ValueError(f"bucket must be one of {sorted(VALID_BUCKETS)}, got '{bucket}'")

        filters = filters or AuditFilters()
        where, params = filters.where_clause()
        since = self._clock.now() - timedelta(hours=24)

        summary = await conn.fetchrow(
            f"""
            SELECT
                COUNT(*) AS total,
                COUNT(DISTINCT l.actor_id) AS unique_actors,
                COUNT(DISTINCT l.patient_id) AS unique_patients,
                COUNT(*) FILTER (WHERE NOT l.success) AS failures,
                COUNT(*) FILTER (WHERE l.event_time >= ${len(params) + 1}) AS last_24h
            FROM access_audit_log l
            {where}
            """,
            *params,
            since,
        )
        type_rows = await conn.fetch(
            f"""
            SELECT l.event_type::text AS key, COUNT(*) AS count
            FROM access_audit_log l {where}
            GROUP BY l.event_type ORDER BY count DESC
            """,
            *params,
        )
        role_rows = await conn.fetch(
            f"""
            SELECT l.actor_role AS key, COUNT(*) AS count
            FROM access_audit_log l {where}
            GROUP BY l.actor_role ORDER BY count DESC
            """,
            *params,
        )
        bucket_rows = await conn.fetch(
            f"""
            SELECT date_trunc(${len(params) + 1}, l.event_time) AS bucket, COUNT(*) AS count
            FROM access_audit_log l {where}
            GROUP BY bucket ORDER BY bucket
            """,
            *params,
            bucket,
        )

        summary = dict(summary) if summary else {}
        return AuditStats(
            total=summary.get("total", 0),
            unique_actors=summary.get("unique_actors", 0),
            unique_patients=summary.get("unique_patients", 0),
            failures=summary.get("failures", 0),
            last_24h=summary.get("last_24h", 0),
            by_event_type={row["key"]: row["count"] for row in type_rows},
            by_role={row["key"]: row["count"] for row in role_rows},
            by_bucket=[(row["bucket"], row["count"]) for row in bucket_rows],
        )

    async def export(
        self,
        conn: asyncpg.Connection,
        filters: AuditFilters | None = None,
        exported_by: str | None = None,
        exporter_role: ActorRole = ActorRole.SYSTEM,
        limit: int = DEFAULT_EXPORT_LIMIT,
    ) -> str:
        """Serialize every event matching ``filters`` to CSV, newest first.

        Pagination fields are ignored. The export itself is audited.
        """
        filters = filters or AuditFilters()
        where, params = filters.where_clause()

        rows = await conn.fetch(
            f"""
            {SELECT_SQL}
            {where}
            ORDER BY l.event_time DESC, l.audit_id DESC
            LIMIT ${len(params) + 1}
            """,
            *params,
            limit,
        )
        records = [AuditRecord.from_db_row(row) for row in rows]

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_COLUMNS)
        for record in records:
            event = record.event
            writer.writerow(
                [
                    str(event.event_id),
                    event.event_time.isoformat() if event.event_time else "",
                    event.actor_id or "",
                    record.actor_name or "",
                    event.actor_role.value,
                    event.patient_id or "",
                    record.patient_name or "",
                    event.event_type.value,
                    "success" if event.success else "failure",
                    json.dumps(asdict(event.details), sort_keys=True),
                ]
            )

        if len(records) == limit:
            logger.warning("Audit export truncated at %d rows", limit)

        if self._audit_logger:
            await self._audit_logger.record(
                AuditEvent(
                    event_type=AuditEventType.AUDIT_EXPORTED,
                    actor_id=exported_by,
                    actor_role=exporter_role,
                    patient_id=filters.patient_id,
                    details=AuditExportedDetails(
                        row_count=len(records), filters=filters.to_dict()
                    ),
                )
            )
        return buffer.getvalue()
