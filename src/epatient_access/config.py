"""Configuration file support for epatient-access."""

import logging
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_PATH = Path("/tmp/epatient_access_audit_fallback.jsonl")

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

CREDENTIAL_KEYS = {
    "password",
    "db_password",
    "database_password",
    "secret",
    "api_key",
    "token",
    "credentials",
    "auth",
}

POSITIVE_INT_FIELDS = {
    "otp_ttl_minutes",
    "otp_max_attempts",
    "otp_length",
    "otp_rate_limit_max",
    "otp_rate_limit_window_minutes",
    "emergency_session_minutes",
    "regular_ttl_hours",
    "min_reason_length",
    "audit_batch_size",
}

POSITIVE_FLOAT_FIELDS = {"sweep_interval_seconds", "audit_flush_interval"}


@dataclass
class AccessConfig:
    """Tunable bounds for credentials, sessions and the audit pipeline."""

    otp_ttl_minutes: int = 5
    otp_max_attempts: int = 3
    otp_length: int = 6
    otp_rate_limit_max: int = 5
    otp_rate_limit_window_minutes: int = 15
    emergency_session_minutes: int = 10
    regular_ttl_hours: int = 24
    min_reason_length: int = 10
    sweep_interval_seconds: float = 60.0
    audit_batch_size: int = 100
    audit_flush_interval: float = 5.0
    audit_fallback_path: Path = DEFAULT_FALLBACK_PATH
    sms_gateway_url: str | None = None
    sms_account_sid: str | None = None
    sms_from_number: str | None = None
    dev_mode: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccessConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown configuration keys: %s", ", ".join(sorted(unknown)))

        values = {k: v for k, v in data.items() if k in known}
        if "audit_fallback_path" in values:
            values["audit_fallback_path"] = Path(values["audit_fallback_path"])
        return cls(**values)


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


class CredentialInConfigError(Exception):
    """Raised when credentials are detected in configuration files."""

    pass


def detect_credentials_in_config(
    config_dict: dict[str, Any],
    path: str = "",
    warn_only: bool = True,
) -> list[str]:
    """Detect potential credentials in configuration dictionary.

    Args:
        config_dict: Configuration dictionary to check.
        path: Current path in nested config (for error messages).
        warn_only: If True, emit warning. If False, raise error.

    Returns:
        List of detected credential key paths.

    Raises:
        CredentialInConfigError: If credentials found and warn_only=False.
    """
    detected = []

    for key, value in config_dict.items():
        current_path = f"{path}.{key}" if path else key
        key_lower = key.lower()

        if any(cred_key in key_lower for cred_key in CREDENTIAL_KEYS):
            if value and not isinstance(value, dict):
                detected.append(current_path)

        if isinstance(value, dict):
            detected.extend(detect_credentials_in_config(value, current_path, warn_only=True))

    if detected and not path:
        msg = (
            f"Potential credentials detected in config file: {', '.join(detected)}. "
            "Signing keys, gateway tokens and database passwords must be provided "
            "via environment variables, not configuration files."
        )
        if warn_only:
            logger.warning(msg)
        else:
            raise CredentialInConfigError(msg)

    return detected


def validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values.

    Raises:
        ConfigValidationError: If any configuration value is invalid.
    """
    for name in POSITIVE_INT_FIELDS & config_dict.keys():
        value = config_dict[name]
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigValidationError(
                f"{name} must be an integer, got {type(value).__name__}"
            )
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    for name in POSITIVE_FLOAT_FIELDS & config_dict.keys():
        value = config_dict[name]
        if not isinstance(value, int | float) or isinstance(value, bool):
            raise ConfigValidationError(f"{name} must be a number, got {type(value).__name__}")
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    if "min_reason_length" in config_dict and config_dict["min_reason_length"] < 10:
        raise ConfigValidationError(
            f"min_reason_length cannot be lower than 10, got {config_dict['min_reason_length']}"
        )

    if "otp_length" in config_dict and not 4 <= config_dict["otp_length"] <= 10:
        raise ConfigValidationError(
            f"otp_length must be between 4 and 10, got {config_dict['otp_length']}"
        )

    if "log_level" in config_dict:
        log_level = config_dict["log_level"]
        if not isinstance(log_level, str):
            raise ConfigValidationError(
                f"log_level must be a string, got {type(log_level).__name__}"
            )
        if log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigValidationError(
                f"log_level must be one of {VALID_LOG_LEVELS}, got '{log_level}'"
            )


def load_config(config_path: Path, overrides: dict[str, Any] | None = None) -> AccessConfig:
    """Load configuration from a TOML file.

    Values live under an ``[epatient_access]`` table.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ConfigValidationError: If any configuration value is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "rb") as f:
        toml_data = tomllib.load(f)

    detect_credentials_in_config(toml_data, warn_only=True)

    config_dict = dict(toml_data.get("epatient_access", {}))

    if overrides:
        config_dict.update(overrides)

    validate_config(config_dict)

    return AccessConfig.from_dict(config_dict)
