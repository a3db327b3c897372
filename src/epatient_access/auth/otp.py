"""One-time code issuance and verification.

At most one live code exists per (subject, purpose): issuing a new code
replaces the previous one in a single upsert. Codes are stored as Argon2
hashes only, are single use, and fail closed once the attempt bound is hit.
"""

import logging
import secrets
from datetime import datetime, timedelta
from uuid import uuid4

import asyncpg
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from ..audit.logger import AuditLogger
from ..audit.models import (
    ActorRole,
    AuditEvent,
    AuditEventType,
    OTPIssuedDetails,
    OTPVerificationFailedDetails,
    OTPVerifiedDetails,
)
from ..clock import Clock, SystemClock
from ..config import AccessConfig
from ..notify import LoggingChannel, NotificationChannel
from .errors import CredentialError, CredentialFailure, IdentityNotFound, RateLimitExceeded
from .identities import IdentityDirectory, normalize_identifier
from .models import Identity, IssuedCode, OneTimeCode, OTPPurpose, Role

logger = logging.getLogger(__name__)

PURPOSE_ROLES = {
    OTPPurpose.EMERGENCY_ACCESS: {Role.DOCTOR},
    OTPPurpose.OPERATOR_LOGIN: {Role.OPERATOR},
    OTPPurpose.LOGIN: {Role.PATIENT, Role.DOCTOR},
}

PURPOSE_MESSAGES = {
    OTPPurpose.LOGIN: "Your login code is {code}. It expires in {minutes} minutes.",
    OTPPurpose.REGISTRATION: "Your registration code is {code}. It expires in {minutes} minutes.",
    OTPPurpose.EMERGENCY_ACCESS: (
        "EMERGENCY ACCESS code: {code}. It expires in {minutes} minutes. "
        "Do not share this code."
    ),
    OTPPurpose.OPERATOR_LOGIN: "Your operator login code is {code}. It expires in {minutes} minutes.",
}


class OneTimeCodeManager:
    def __init__(
        self,
        config: AccessConfig | None = None,
        channel: NotificationChannel | None = None,
        directory: IdentityDirectory | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Clock | None = None,
    ):
        self._config = config or AccessConfig()
        self._channel = channel or LoggingChannel()
        self._directory = directory or IdentityDirectory()
        self._audit_logger = audit_logger
        self._clock = clock or SystemClock()
        self._hasher = PasswordHasher(
            time_cost=2,
            memory_cost=19456,
            parallelism=1,
            hash_len=32,
            salt_len=16,
        )

    @property
    def config(self) -> AccessConfig:
        return self._config

    def generate_code(self) -> str:
        length = self._config.otp_length
        return f"{secrets.randbelow(10**length):0{length}d}"

    def hash_code(self, code: str) -> str:
        return self._hasher.hash(code)

    def code_matches(self, code_hash: str, code: str) -> bool:
        try:
            return self._hasher.verify(code_hash, code)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    async def _resolve(
        self, conn: asyncpg.Connection, identifier: str, purpose: OTPPurpose
    ) -> tuple[str, str, Identity | None]:
        """Return (subject, destination, identity) for an identifier.

        Registration codes are bound to the claimed identifier itself since no
        identity exists yet.
        """
        identifier = normalize_identifier(identifier)
        if purpose == OTPPurpose.REGISTRATION:
            return identifier, identifier, None

        identity = await self._directory.find_by_identifier(conn, identifier)
        if identity is None or identity.is_retired:
            raise IdentityNotFound()
        allowed_roles = PURPOSE_ROLES.get(purpose)
        if allowed_roles is not None and identity.role not in allowed_roles:
            raise IdentityNotFound()
        if identity.contact is None:
            raise IdentityNotFound()
        return identity.identity_id, identity.contact, identity

    async def _check_rate_limit(
        self,
        conn: asyncpg.Connection,
        subject: str,
        purpose: OTPPurpose,
        now: datetime,
    ) -> None:
        window = timedelta(minutes=self._config.otp_rate_limit_window_minutes)
        row = await conn.fetchrow(
            """
            INSERT INTO otp_rate_limits (subject, purpose, window_started_at, issue_count)
            VALUES ($1, $2, $3, 1)
            ON CONFLICT (subject, purpose) DO UPDATE SET
                window_started_at = CASE
                    WHEN otp_rate_limits.window_started_at <= $4 THEN EXCLUDED.window_started_at
                    ELSE otp_rate_limits.window_started_at
                END,
                issue_count = CASE
                    WHEN otp_rate_limits.window_started_at <= $4 THEN 1
                    ELSE otp_rate_limits.issue_count + 1
                END
            RETURNING window_started_at, issue_count
            """,
            subject,
            purpose.value,
            now,
            now - window,
        )
        if row["issue_count"] > self._config.otp_rate_limit_max:
            retry_after = row["window_started_at"] + window
            logger.warning(
                "Code issuance rate limit hit for %s (%s)", purpose.value, subject[-4:]
            )
            raise RateLimitExceeded(
                f"Too many codes requested. Try again after {retry_after.isoformat()}",
                retry_after=retry_after,
            )

    async def issue(
        self,
        conn: asyncpg.Connection,
        identifier: str,
        purpose: OTPPurpose,
    ) -> IssuedCode:
        """Issue a fresh code for (identifier, purpose), replacing any earlier one.

        Delivery failure is reported in ``IssuedCode.delivered`` but the code
        stays valid.

        Raises:
            InputRejected: Blank identifier.
            RateLimitExceeded: Too many codes issued in the current window.
            IdentityNotFound: No eligible identity for the identifier.
        """
        subject, destination, identity = await self._resolve(conn, identifier, purpose)
        now = self._clock.now()

        await self._check_rate_limit(conn, subject, purpose, now)

        code = self.generate_code()
        expires_at = now + timedelta(minutes=self._config.otp_ttl_minutes)

        await conn.execute(
            """
            INSERT INTO one_time_codes (
                code_id, subject, purpose, code_hash, created_at, expires_at,
                attempts, max_attempts, exhausted
            ) VALUES ($1, $2, $3, $4, $5, $6, 0, $7, false)
            ON CONFLICT (subject, purpose) DO UPDATE SET
                code_id = EXCLUDED.code_id,
                code_hash = EXCLUDED.code_hash,
                created_at = EXCLUDED.created_at,
                expires_at = EXCLUDED.expires_at,
                attempts = 0,
                max_attempts = EXCLUDED.max_attempts,
                exhausted = false
            """,
            uuid4(),
            subject,
            purpose.value,
            self.hash_code(code),
            now,
            expires_at,
            self._config.otp_max_attempts,
        )

        message = PURPOSE_MESSAGES[purpose].format(
            code=code, minutes=self._config.otp_ttl_minutes
        )
        result = await self._channel.send(destination, message)
        if not result.delivered:
            logger.error(
                "Code for %s issued but delivery failed (%s); the code remains valid",
                purpose.value,
                result.error,
            )

        if self._audit_logger:
            await self._audit_logger.log_event(
                AuditEvent(
                    event_type=AuditEventType.OTP_ISSUED,
                    actor_id=identity.identity_id if identity else None,
                    actor_role=_actor_role(identity),
                    details=OTPIssuedDetails(
                        purpose=purpose.value,
                        delivered=result.delivered,
                        expires_at=expires_at.isoformat(),
                    ),
                )
            )

        return IssuedCode(
            subject=subject,
            purpose=purpose,
            expires_at=expires_at,
            delivered=result.delivered,
            code=code,
        )

    async def verify(
        self,
        conn: asyncpg.Connection,
        identifier: str,
        code: str,
        purpose: OTPPurpose,
        audit: bool = True,
    ) -> str:
        """Verify and consume a code. Returns the subject it was issued to.

        Raises:
            CredentialError: NOT_FOUND, EXPIRED, ATTEMPTS_EXHAUSTED or MISMATCH.
        """
        try:
            subject, _, identity = await self._resolve(conn, identifier, purpose)
        except IdentityNotFound:
            failure = CredentialError(CredentialFailure.NOT_FOUND, "No active code found")
            if audit:
                await self._audit_failure(None, purpose, failure.failure)
            raise failure from None

        failure = await self._consume(conn, subject, code.strip(), purpose)

        if failure is not None:
            if audit:
                await self._audit_failure(identity, purpose, failure)
            raise CredentialError(failure, _FAILURE_MESSAGES[failure])

        if audit and self._audit_logger:
            await self._audit_logger.record(
                AuditEvent(
                    event_type=AuditEventType.OTP_VERIFIED,
                    actor_id=identity.identity_id if identity else None,
                    actor_role=_actor_role(identity),
                    details=OTPVerifiedDetails(purpose=purpose.value),
                )
            )
        return subject

    async def _consume(
        self,
        conn: asyncpg.Connection,
        subject: str,
        code: str,
        purpose: OTPPurpose,
    ) -> CredentialFailure | None:
        now = self._clock.now()

        async with conn.transaction():
            row = await conn.fetchrow(
                """
                SELECT code_id, subject, purpose, code_hash, created_at, expires_at,
                       attempts, max_attempts, exhausted
                FROM one_time_codes
                WHERE subject = $1 AND purpose = $2
                FOR UPDATE
                """,
                subject,
                purpose.value,
            )
            if not row:
                return CredentialFailure.NOT_FOUND

            record = OneTimeCode.from_db_row(dict(row))

            if record.exhausted:
                return CredentialFailure.ATTEMPTS_EXHAUSTED

            if record.is_expired(now):
                await conn.execute(
                    "DELETE FROM one_time_codes WHERE code_id = $1", record.code_id
                )
                return CredentialFailure.EXPIRED

            if record.code_hash and self.code_matches(record.code_hash, code):
                await conn.execute(
                    "DELETE FROM one_time_codes WHERE code_id = $1", record.code_id
                )
                return None

            attempts = record.attempts + 1
            if attempts >= record.max_attempts:
                await conn.execute(
                    """
                    UPDATE one_time_codes
                    SET attempts = $2, exhausted = true, code_hash = NULL
                    WHERE code_id = $1
                    """,
                    record.code_id,
                    attempts,
                )
                logger.warning("Code for %s exhausted after %d attempts", purpose.value, attempts)
            else:
                await conn.execute(
                    "UPDATE one_time_codes SET attempts = $2 WHERE code_id = $1",
                    record.code_id,
                    attempts,
                )
            return CredentialFailure.MISMATCH

    async def _audit_failure(
        self,
        identity: Identity | None,
        purpose: OTPPurpose,
        failure: CredentialFailure,
    ) -> None:
        if not self._audit_logger:
            return
        await self._audit_logger.record(
            AuditEvent(
                event_type=AuditEventType.OTP_VERIFICATION_FAILED,
                actor_id=identity.identity_id if identity else None,
                actor_role=_actor_role(identity),
                details=OTPVerificationFailedDetails(
                    purpose=purpose.value, failure=failure.value
                ),
            )
        )

    async def cleanup_expired(self, conn: asyncpg.Connection) -> int:
        """Delete expired codes and elapsed rate-limit windows."""
        now = self._clock.now()
        window = timedelta(minutes=self._config.otp_rate_limit_window_minutes)

        result = await conn.execute("DELETE FROM one_time_codes WHERE expires_at <= $1", now)
        await conn.execute(
            "DELETE FROM otp_rate_limits WHERE window_started_at <= $1", now - window
        )

        count_str = result.split()[-1]
        count = int(count_str) if count_str.isdigit() else 0
        if count:
            logger.info("Removed %d expired one-time codes", count)
        return count


_FAILURE_MESSAGES = {
    CredentialFailure.NOT_FOUND: "No active code found",
    CredentialFailure.EXPIRED: "Code has expired",
    CredentialFailure.ATTEMPTS_EXHAUSTED: "Too many failed attempts; request a new code",
    CredentialFailure.MISMATCH: "Invalid code",
}


def _actor_role(identity: Identity | None) -> ActorRole:
    if identity is None:
        return ActorRole.ANONYMOUS
    return ActorRole(identity.role.value)
