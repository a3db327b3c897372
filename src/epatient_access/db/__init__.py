"""Database connection helpers."""

import logging
import os
from urllib.parse import urlparse, urlunparse

import asyncpg

from ..secrets import DB_PASSWORD_ENV_VAR, get_database_password, validate_no_password_in_url

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "epatient"


def _with_password(url: str, password: str) -> str:
    parsed = urlparse(url)
    user_part = parsed.username or "postgres"
    netloc = f"{user_part}:{password}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def resolve_database_url(
    db_url: str | None = None,
    host: str | None = None,
    port: int | None = None,
    database: str | None = None,
    user: str | None = None,
    password_env_var: str = DB_PASSWORD_ENV_VAR,
) -> str | None:
    """Resolve a connection URL.

    Priority (highest to lowest):
        1. Explicit ``db_url``
        2. POSTGRES_URL environment variable
        3. Host/port/database/user arguments, then PG* environment variables

    URLs must not embed a password; the password is always taken from the
    secrets provider.

    Returns:
        Database connection URL, or None if insufficient info.

    Raises:
        CredentialValidationError: If a password is embedded in a URL.
    """
    url = db_url or os.environ.get("POSTGRES_URL")
    if url:
        validate_no_password_in_url(url)
        password = get_database_password(password_env_var=password_env_var)
        if password:
            logger.info("Using database URL with password from %s", password_env_var)
            return _with_password(url, password)
        return url

    resolved_host = host or os.environ.get("PGHOST")
    if not resolved_host:
        return None

    resolved_port = port or int(os.environ.get("PGPORT", "5432"))
    resolved_user = user or os.environ.get("PGUSER", "postgres")
    resolved_database = database or os.environ.get("PGDATABASE", DEFAULT_DATABASE)

    password = get_database_password(password_env_var=password_env_var)
    if password:
        return f"postgresql://{resolved_user}:{password}@{resolved_host}:{resolved_port}/{resolved_database}"
    return f"postgresql://{resolved_user}@{resolved_host}:{resolved_port}/{resolved_database}"


async def create_pool(url: str, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    return await asyncpg.create_pool(url, min_size=min_size, max_size=max_size)
