"""Pytest configuration and fixtures for epatient-access tests."""

from unittest.mock import AsyncMock, MagicMock
from urllib.parse import urlparse, urlunparse

import pytest

from epatient_access.clock import ManualClock
from epatient_access.config import AccessConfig

try:
    from testcontainers.postgres import PostgresContainer

    HAS_TESTCONTAINERS = True
except ImportError:
    HAS_TESTCONTAINERS = False

TEST_JWT_SECRET = "test-signing-key-0123456789abcdef0123456789"


def parse_db_credentials(url: str) -> tuple[str, str]:
    """Split a container URL into a password-less URL and the password.

    The CLI refuses URLs with embedded passwords, so CLI tests pass the
    password through the environment.
    """
    if url.startswith("postgresql+psycopg2://"):
        url = url.replace("postgresql+psycopg2://", "postgresql://")

    parsed = urlparse(url)
    password = parsed.password or ""
    netloc = f"{parsed.username}@{parsed.hostname}" if parsed.username else parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"

    password_less_url = urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )
    return password_less_url, password


def make_mock_conn() -> AsyncMock:
    """AsyncMock connection whose ``transaction()`` works as an async context manager."""
    conn = AsyncMock()
    tx = MagicMock()
    tx.__aenter__ = AsyncMock(return_value=None)
    tx.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=tx)
    return conn


@pytest.fixture
def mock_conn():
    return make_mock_conn()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    return AccessConfig()


@pytest.fixture
def audit_logger():
    logger = AsyncMock()
    logger.record.return_value = True
    return logger


@pytest.fixture(scope="session")
def postgres_container():
    """Create a PostgreSQL container for integration tests."""
    if not HAS_TESTCONTAINERS:
        pytest.skip("testcontainers not installed")

    with PostgresContainer("postgres:15") as postgres:
        yield postgres


@pytest.fixture
def pg_url(postgres_container) -> str:
    url = postgres_container.get_connection_url()
    if url.startswith("postgresql+psycopg2://"):
        url = url.replace("postgresql+psycopg2://", "postgresql://")
    return url


@pytest.fixture
async def access_db(pg_url):
    """Connection to a database with both schemas created and all tables empty."""
    import asyncpg

    from epatient_access.audit.schema import AuditSchemaManager
    from epatient_access.auth.schema import AccessSchemaManager

    conn = await asyncpg.connect(pg_url)
    await AccessSchemaManager().create_schema(conn)
    await AuditSchemaManager().create_audit_schema(conn)
    await conn.execute(
        """
        TRUNCATE access_audit_log, emergency_sessions, biometric_references,
                 one_time_codes, otp_rate_limits, identities CASCADE
        """
    )

    yield conn

    await conn.close()


@pytest.fixture
async def access_pool(pg_url, access_db):
    import asyncpg

    pool = await asyncpg.create_pool(pg_url, min_size=2, max_size=10)
    yield pool
    await pool.close()
