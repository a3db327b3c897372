"""Secrets retrieval for signing keys, gateway credentials and database passwords.

Secret values never appear in configuration files, URLs or log lines.
"""

import logging
import os
import re
import secrets as secrets_module
from abc import ABC, abstractmethod
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DB_PASSWORD_ENV_VAR = "EPATIENT_ACCESS_DB_PASSWORD"
JWT_SECRET_ENV_VAR = "EPATIENT_ACCESS_JWT_SECRET"
SMS_AUTH_TOKEN_ENV_VAR = "EPATIENT_ACCESS_SMS_AUTH_TOKEN"

MIN_JWT_SECRET_LENGTH = 32


class MaskedSecret:
    """Wrapper that prevents accidental exposure of secret values."""

    def __init__(self, value: str):
        self._value = value

    def get_value(self) -> str:
        return self._value

    def __str__(self) -> str:
        return "***MASKED***"

    def __repr__(self) -> str:
        return "MaskedSecret(***)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, MaskedSecret):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)


class SecretProvider(ABC):
    """Abstract base class for secrets backends."""

    @abstractmethod
    def get_secret(self, key: str) -> str | None:
        """Retrieve a secret value by key, or None if not found."""
        pass

    def get_secret_masked(self, key: str) -> MaskedSecret | None:
        value = self.get_secret(key)
        if value is not None:
            return MaskedSecret(value)
        return None


class EnvSecretProvider(SecretProvider):
    """Retrieve secrets from environment variables."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def get_secret(self, key: str) -> str | None:
        full_key = f"{self.prefix}{key}" if self.prefix else key
        value = os.environ.get(full_key)
        if value is not None:
            logger.debug("Secret loaded from environment variable: %s", full_key)
        return value


class SecretProviderError(Exception):
    """Raised when secret retrieval fails."""

    pass


class CredentialValidationError(Exception):
    """Raised when credentials are found in insecure locations."""

    pass


def validate_no_password_in_url(url: str) -> None:
    """Reject database URLs that embed a password.

    Raises:
        CredentialValidationError: If password is detected in URL.
    """
    parsed = urlparse(url)
    user_info = parsed.netloc.split("@")[0] if "@" in parsed.netloc else ""

    if parsed.password or ":" in user_info:
        raise CredentialValidationError(
            "Database password detected in connection URL. "
            f"Passwords must be provided via environment variable ({DB_PASSWORD_ENV_VAR} "
            "or PGPASSWORD)."
        )


def mask_password_in_url(url: str) -> str:
    """Mask any password in a database URL for safe logging."""
    pattern = r"(://[^:]+:)([^@]+)(@)"
    return re.sub(pattern, r"\1***MASKED***\3", url)


def get_default_provider() -> SecretProvider:
    return EnvSecretProvider()


def get_database_password(
    provider: SecretProvider | None = None,
    password_env_var: str = DB_PASSWORD_ENV_VAR,
) -> str | None:
    """Get database password from secrets provider, falling back to PGPASSWORD."""
    if provider is None:
        provider = get_default_provider()

    password = provider.get_secret(password_env_var)
    if password:
        logger.info("Database password loaded from %s", password_env_var)
        return password

    password = provider.get_secret("PGPASSWORD")
    if password:
        logger.info("Database password loaded from PGPASSWORD")
        return password

    return None


def get_jwt_secret(
    provider: SecretProvider | None = None,
    allow_ephemeral: bool = False,
) -> MaskedSecret:
    """Load the token signing key.

    With ``allow_ephemeral`` a random key is generated when none is configured;
    tokens signed with it do not survive a restart.

    Raises:
        SecretProviderError: If no key is configured, or the key is too short.
    """
    if provider is None:
        provider = get_default_provider()

    secret = provider.get_secret(JWT_SECRET_ENV_VAR)
    if not secret:
        if allow_ephemeral:
            logger.warning(
                "%s not set; using an ephemeral signing key for this process", JWT_SECRET_ENV_VAR
            )
            return MaskedSecret(secrets_module.token_hex(32))
        raise SecretProviderError(f"Token signing key not configured. Set {JWT_SECRET_ENV_VAR}.")

    if len(secret) < MIN_JWT_SECRET_LENGTH:
        raise SecretProviderError(
            f"Token signing key must be at least {MIN_JWT_SECRET_LENGTH} characters "
            f"(provided: {len(secret)})"
        )
    return MaskedSecret(secret)


def get_sms_auth_token(provider: SecretProvider | None = None) -> MaskedSecret | None:
    if provider is None:
        provider = get_default_provider()
    return provider.get_secret_masked(SMS_AUTH_TOKEN_ENV_VAR)
