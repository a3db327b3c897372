"""Wiring of the access-control components around one connection pool."""

import logging
from functools import cached_property

import asyncpg

from .audit.logger import AuditLogger
from .audit.retention import AuditRetentionManager
from .audit.trail import AuditTrail
from .auth.access import AccessDecisionEngine
from .auth.biometric import BiometricMatcher, BiometricVerifier
from .auth.emergency_access import EmergencyAccessManager
from .auth.identities import IdentityDirectory
from .auth.otp import OneTimeCodeManager
from .auth.session_store import EmergencySessionStore
from .auth.sweeper import SessionSweeper
from .auth.tokens import TokenService
from .clock import Clock, SystemClock
from .config import AccessConfig
from .notify import HttpSmsChannel, LoggingChannel, NotificationChannel
from .secrets import SecretProvider, get_jwt_secret, get_sms_auth_token

logger = logging.getLogger(__name__)


def build_channel(config: AccessConfig, provider: SecretProvider | None = None) -> NotificationChannel:
    """SMS gateway when one is fully configured, otherwise the logging channel."""
    if config.sms_gateway_url and config.sms_account_sid and config.sms_from_number:
        auth_token = get_sms_auth_token(provider)
        if auth_token is not None:
            return HttpSmsChannel(
                base_url=config.sms_gateway_url,
                account_sid=config.sms_account_sid,
                auth_token=auth_token,
                from_number=config.sms_from_number,
            )
        logger.warning("SMS gateway configured but no auth token set; codes will only be logged")
    return LoggingChannel()


class AccessServices:
    """Components are created on first use.

    The token service is only built when something needs it, so commands that
    never mint or check tokens run without a signing key configured.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        config: AccessConfig | None = None,
        clock: Clock | None = None,
        channel: NotificationChannel | None = None,
        matcher: BiometricMatcher | None = None,
        secret_provider: SecretProvider | None = None,
    ):
        self.pool = pool
        self.config = config or AccessConfig()
        self.clock = clock or SystemClock()
        self._channel = channel
        self._matcher = matcher
        self._secret_provider = secret_provider
        self.directory = IdentityDirectory()

    @cached_property
    def audit_logger(self) -> AuditLogger:
        return AuditLogger(
            pool=self.pool,
            batch_size=self.config.audit_batch_size,
            flush_interval=self.config.audit_flush_interval,
            fallback_path=self.config.audit_fallback_path,
            clock=self.clock,
        )

    @cached_property
    def otp(self) -> OneTimeCodeManager:
        return OneTimeCodeManager(
            config=self.config,
            channel=self._channel or build_channel(self.config, self._secret_provider),
            directory=self.directory,
            audit_logger=self.audit_logger,
            clock=self.clock,
        )

    @cached_property
    def biometric(self) -> BiometricVerifier:
        return BiometricVerifier(
            matcher=self._matcher,
            directory=self.directory,
            audit_logger=self.audit_logger,
            clock=self.clock,
        )

    @cached_property
    def tokens(self) -> TokenService:
        secret = get_jwt_secret(self._secret_provider, allow_ephemeral=self.config.dev_mode)
        return TokenService(secret, config=self.config, clock=self.clock)

    @cached_property
    def sessions(self) -> EmergencySessionStore:
        return EmergencySessionStore(config=self.config, clock=self.clock)

    @cached_property
    def emergency(self) -> EmergencyAccessManager:
        return EmergencyAccessManager(
            store=self.sessions,
            tokens=self.tokens,
            otp=self.otp,
            biometric=self.biometric,
            directory=self.directory,
            audit_logger=self.audit_logger,
            config=self.config,
            clock=self.clock,
        )

    @cached_property
    def access(self) -> AccessDecisionEngine:
        return AccessDecisionEngine(
            tokens=self.tokens,
            store=self.sessions,
            directory=self.directory,
            audit_logger=self.audit_logger,
        )

    @cached_property
    def trail(self) -> AuditTrail:
        return AuditTrail(audit_logger=self.audit_logger, clock=self.clock)

    @cached_property
    def retention(self) -> AuditRetentionManager:
        return AuditRetentionManager(audit_logger=self.audit_logger, clock=self.clock)

    def sweeper(self) -> SessionSweeper:
        return SessionSweeper(
            pool=self.pool,
            store=self.sessions,
            otp=self.otp,
            audit_logger=self.audit_logger,
            interval=self.config.sweep_interval_seconds,
        )

    async def close(self) -> None:
        """Flush buffered audit events."""
        if "audit_logger" in self.__dict__:
            await self.audit_logger.stop()
