"""Identity lookups against the record store.

Only existence, role, retirement and display fields are read here; clinical
data never passes through this module.
"""

import logging
from datetime import datetime
from uuid import uuid4

import asyncpg

from .errors import InputRejected
from .models import Identity, Role

logger = logging.getLogger(__name__)

IDENTITY_COLUMNS = """
    identity_id, role, display_name, phone, email, hospital_id, retired_at, created_at
"""


def normalize_identifier(identifier: str) -> str:
    identifier = identifier.strip()
    if not identifier:
        raise InputRejected("An identifier (phone, email or id) is required")
    if "@" in identifier:
        return identifier.lower()
    return identifier


class IdentityDirectory:
    async def get(self, conn: asyncpg.Connection, identity_id: str) -> Identity | None:
        row = await conn.fetchrow(
            f"SELECT {IDENTITY_COLUMNS} FROM identities WHERE identity_id = $1",
            identity_id,
        )
        return Identity.from_db_row(dict(row)) if row else None

    async def find_by_identifier(
        self,
        conn: asyncpg.Connection,
        identifier: str,
        role: Role | None = None,
    ) -> Identity | None:
        """Resolve a phone number, email address or id to an identity.

        An exact id match wins over a phone match, which wins over an email match.
        """
        identifier = normalize_identifier(identifier)
        row = await conn.fetchrow(
            f"""
            SELECT {IDENTITY_COLUMNS}
            FROM identities
            WHERE (identity_id = $1 OR phone = $1 OR lower(email) = lower($1))
              AND ($2::text IS NULL OR role = $2)
            ORDER BY
                CASE
                    WHEN identity_id = $1 THEN 0
                    WHEN phone = $1 THEN 1
                    ELSE 2
                END
            LIMIT 1
            """,
            identifier,
            role.value if role else None,
        )
        return Identity.from_db_row(dict(row)) if row else None

    async def register(
        self,
        conn: asyncpg.Connection,
        role: Role,
        display_name: str,
        phone: str | None = None,
        email: str | None = None,
        hospital_id: str | None = None,
        identity_id: str | None = None,
    ) -> Identity:
        if not phone and not email:
            raise InputRejected("A phone number or email address is required")
        if not display_name.strip():
            raise InputRejected("A display name is required")
        if role == Role.OPERATOR and not hospital_id:
            raise InputRejected("Operators must belong to a hospital")

        row = await conn.fetchrow(
            f"""
            INSERT INTO identities (identity_id, role, display_name, phone, email, hospital_id)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {IDENTITY_COLUMNS}
            """,
            identity_id or str(uuid4()),
            role.value,
            display_name.strip(),
            phone.strip() if phone else None,
            email.strip().lower() if email else None,
            hospital_id,
        )
        identity = Identity.from_db_row(dict(row))
        logger.info("Registered %s identity %s", role.value.lower(), identity.identity_id)
        return identity

    async def retire(self, conn: asyncpg.Connection, identity_id: str, when: datetime) -> bool:
        """Soft-retire a patient and drop their biometric references."""
        async with conn.transaction():
            retired = await conn.fetchval(
                """
                UPDATE identities SET retired_at = $2
                WHERE identity_id = $1 AND role = 'PATIENT' AND retired_at IS NULL
                RETURNING identity_id
                """,
                identity_id,
                when,
            )
            if retired is None:
                return False
            await conn.execute(
                "DELETE FROM biometric_references WHERE identity_id = $1",
                identity_id,
            )
        logger.info("Retired patient %s", identity_id)
        return True

    async def hospital_of(self, conn: asyncpg.Connection, identity_id: str) -> str | None:
        return await conn.fetchval(
            "SELECT hospital_id FROM identities WHERE identity_id = $1",
            identity_id,
        )
