"""Audit trail schema management."""

from importlib.resources import files

import asyncpg


class AuditSchemaManager:
    """Creates the append-only audit table and its immutability trigger."""

    async def create_audit_schema(self, conn: asyncpg.Connection) -> None:
        sql = files("epatient_access.db.schema").joinpath("audit_tables.sql").read_text()
        await conn.execute(sql)

    async def schema_exists(self, conn: asyncpg.Connection) -> bool:
        result = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_schema = 'public' AND table_name = 'access_audit_log'
            )
            """
        )
        return bool(result)

    async def verify_immutability(self, conn: asyncpg.Connection) -> bool:
        """Verify that the audit immutability trigger is in place."""
        result = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM pg_trigger
                WHERE tgname = 'access_audit_immutability'
                  AND tgrelid = 'access_audit_log'::regclass
            )
            """
        )
        return bool(result)
