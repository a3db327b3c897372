"""Schema management for identities, credentials and emergency sessions."""

import logging
from importlib.resources import files

import asyncpg

logger = logging.getLogger(__name__)


class AccessSchemaManager:
    async def create_schema(self, conn: asyncpg.Connection) -> None:
        sql = files("epatient_access.db.schema").joinpath("auth_tables.sql").read_text()
        await conn.execute(sql)
        logger.info("Access schema created/updated")

    async def schema_exists(self, conn: asyncpg.Connection) -> bool:
        result = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_schema = 'public' AND table_name = 'emergency_sessions'
            )
            """
        )
        return bool(result)

    async def get_identity_count(self, conn: asyncpg.Connection) -> int:
        return await conn.fetchval("SELECT COUNT(*) FROM identities") or 0

    async def get_active_session_count(self, conn: asyncpg.Connection) -> int:
        return (
            await conn.fetchval("SELECT COUNT(*) FROM emergency_sessions WHERE status = 'ACTIVE'")
            or 0
        )
