"""Append-only audit logger with durable writes and a local fallback.

Security-relevant events go through ``record``, which writes immediately.
Operational events go through ``log_event``, which batches. Neither ever
raises into the caller: a failed write lands in a JSONL fallback file and is
escalated on the ``epatient_access.audit.escalation`` logger.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from uuid import UUID

import asyncpg

from ..clock import Clock, SystemClock
from ..config import DEFAULT_FALLBACK_PATH
from .context import get_audit_context
from .models import AuditEvent

logger = logging.getLogger(__name__)
escalation_logger = logging.getLogger("epatient_access.audit.escalation")

DEFAULT_BATCH_SIZE = 100
DEFAULT_FLUSH_INTERVAL = 5.0

INSERT_SQL = """
    INSERT INTO access_audit_log (
        event_id, event_time, event_type, actor_id, actor_role, patient_id,
        success, details, client_ip, client_hostname, application_name, request_id
    ) VALUES (
        $1, $2, $3::access_audit_event_type, $4, $5, $6,
        $7, $8::jsonb, $9::inet, $10, $11, $12
    )
    ON CONFLICT (event_id) DO NOTHING
"""

ErrorSink = Callable[[list[AuditEvent], Exception], None]


class AuditLogger:
    """Async audit logger.

    - ``record`` performs an immediate write and reports whether it reached the store
    - ``log_event`` buffers and writes in batches (size or interval)
    - Falls back to a local JSONL file if the database is unavailable
    - Populates request metadata from the current AuditContext
    """

    def __init__(
        self,
        pool: asyncpg.Pool | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        fallback_path: Path = DEFAULT_FALLBACK_PATH,
        clock: Clock | None = None,
        error_sink: ErrorSink | None = None,
    ):
        self._pool = pool
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._fallback_path = fallback_path
        self._clock = clock or SystemClock()
        self._error_sink = error_sink
        self._buffer: list[AuditEvent] = []
        self._lock = asyncio.Lock()
        self._flush_task: asyncio.Task | None = None
        self._running = False

    @property
    def fallback_path(self) -> Path:
        return self._fallback_path

    async def start(self) -> None:
        """Start the background flush task."""
        if self._running:
            return
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())

    async def stop(self) -> None:
        """Stop the logger and flush remaining events."""
        self._running = False
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()

    async def _flush_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._flush_interval)
                await self.flush()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in audit flush loop: %s", e)

    def set_pool(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    def _prepare(self, event: AuditEvent) -> AuditEvent:
        ctx = get_audit_context()

        if event.client_ip is None:
            event.client_ip = ctx.client_ip
        if event.client_hostname is None:
            event.client_hostname = ctx.client_hostname
        if event.application_name == "epatient-access":
            event.application_name = ctx.application_name
        if event.request_id is None:
            event.request_id = ctx.request_id
        if event.event_time is None:
            event.event_time = self._clock.now()
        return event

    async def record(self, event: AuditEvent) -> bool:
        """Write one event immediately.

        Returns True when the event reached the database, False when it was
        diverted to the fallback file.
        """
        self._prepare(event)
        try:
            await self._write_to_db([event])
            return True
        except Exception as e:
            await self._escalate([event], e)
            return False

    async def log_event(self, event: AuditEvent) -> None:
        """Add an event to the buffer for batched writing."""
        self._prepare(event)

        async with self._lock:
            self._buffer.append(event)
            if len(self._buffer) >= self._batch_size:
                await self._flush_buffer()

    async def flush(self) -> None:
        """Flush all buffered events to the database."""
        async with self._lock:
            await self._flush_buffer()

    async def _flush_buffer(self) -> None:
        """Internal flush - must be called with lock held."""
        if not self._buffer:
            return

        events = self._buffer.copy()
        self._buffer.clear()

        try:
            await self._write_to_db(events)
        except Exception as e:
            logger.warning("Failed to write audit events to DB: %s. Falling back to file.", e)
            await self._escalate(events, e)

    async def _write_to_db(self, events: list[AuditEvent]) -> None:
        if self._pool is None:
            raise RuntimeError("No database pool configured")

        async with self._pool.acquire() as conn:
            await write_events(conn, events)

    async def _escalate(self, events: list[AuditEvent], error: Exception) -> None:
        escalation_logger.critical(
            "Audit write failed for %d event(s) (%s): %s",
            len(events),
            ", ".join(sorted({e.event_type.value for e in events})),
            error,
        )
        await self._write_to_fallback(events)
        if self._error_sink is not None:
            try:
                self._error_sink(events, error)
            except Exception as sink_error:
                logger.error("Audit error sink raised: %s", sink_error)

    async def _write_to_fallback(self, events: list[AuditEvent]) -> None:
        try:
            with open(self._fallback_path, "a") as f:
                for event in events:
                    f.write(json.dumps(_row_to_json(event.to_db_row())) + "\n")
            logger.info(
                "Wrote %d audit events to fallback file: %s", len(events), self._fallback_path
            )
        except Exception as e:
            logger.error("Failed to write to fallback file: %s", e)

    async def replay_fallback(self, conn: asyncpg.Connection) -> int:
        """Load events from the fallback file into the database.

        Inserts are idempotent on event_id. The file is removed once every
        event has been written.
        """
        if not self._fallback_path.exists():
            return 0

        events = []
        with open(self._fallback_path) as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    row = json.loads(line)
                    events.append(AuditEvent.from_db_row(_row_from_json(row)))
                except (ValueError, KeyError, TypeError) as e:
                    raise ValueError(
                        f"Corrupt fallback entry at {self._fallback_path}:{line_number}: {e}"
                    ) from e

        if events:
            await write_events(conn, events)
        self._fallback_path.unlink()
        logger.info("Replayed %d audit events from %s", len(events), self._fallback_path)
        return len(events)


async def write_events(conn: asyncpg.Connection, events: list[AuditEvent]) -> None:
    rows = []
    for event in events:
        row = event.to_db_row()
        rows.append(
            (
                row["event_id"],
                row["event_time"],
                row["event_type"],
                row["actor_id"],
                row["actor_role"],
                row["patient_id"],
                row["success"],
                json.dumps(row["details"]),
                row["client_ip"],
                row["client_hostname"],
                row["application_name"],
                row["request_id"],
            )
        )
    async with conn.transaction():
        await conn.executemany(INSERT_SQL, rows)


def _row_to_json(row: dict) -> dict:
    row = dict(row)
    row["event_id"] = str(row["event_id"])
    row["event_time"] = row["event_time"].isoformat() if row["event_time"] else None
    row["request_id"] = str(row["request_id"]) if row.get("request_id") else None
    return row


def _row_from_json(row: dict) -> dict:
    row = dict(row)
    row["event_id"] = UUID(row["event_id"])
    if row.get("event_time"):
        row["event_time"] = datetime.fromisoformat(row["event_time"])
    if row.get("request_id"):
        row["request_id"] = UUID(row["request_id"])
    return row
