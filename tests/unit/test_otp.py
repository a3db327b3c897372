"""Tests for one-time code issuance and verification."""

from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from epatient_access.audit.models import AuditEventType
from epatient_access.auth.errors import (
    CredentialError,
    CredentialFailure,
    IdentityNotFound,
    InputRejected,
    RateLimitExceeded,
)
from epatient_access.auth.models import Identity, OTPPurpose, Role
from epatient_access.auth.otp import OneTimeCodeManager
from epatient_access.notify import DeliveryResult, DeliveryStatus, LoggingChannel

DOCTOR = Identity(
    identity_id="doc-1", role=Role.DOCTOR, display_name="Dr. Lee", phone="+15550001111"
)
PATIENT = Identity(
    identity_id="pat-1", role=Role.PATIENT, display_name="Ana", email="ana@example.org"
)


@pytest.fixture
def directory():
    directory = AsyncMock()
    directory.find_by_identifier.return_value = DOCTOR
    return directory


@pytest.fixture
def channel():
    return LoggingChannel()


@pytest.fixture
def manager(config, channel, directory, audit_logger, clock):
    return OneTimeCodeManager(
        config=config,
        channel=channel,
        directory=directory,
        audit_logger=audit_logger,
        clock=clock,
    )


def rate_row(clock, count=1):
    return {"window_started_at": clock.now(), "issue_count": count}


def code_row(manager, clock, code="123456", **overrides):
    row = {
        "code_id": uuid4(),
        "subject": "doc-1",
        "purpose": OTPPurpose.EMERGENCY_ACCESS.value,
        "code_hash": manager.hash_code(code),
        "created_at": clock.now(),
        "expires_at": clock.now() + timedelta(minutes=5),
        "attempts": 0,
        "max_attempts": 3,
        "exhausted": False,
    }
    row.update(overrides)
    return row


class TestCodeGeneration:
    def test_code_is_six_digits(self, manager):
        for _ in range(20):
            code = manager.generate_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_hash_is_not_plaintext(self, manager):
        code_hash = manager.hash_code("123456")
        assert "123456" not in code_hash
        assert manager.code_matches(code_hash, "123456")
        assert not manager.code_matches(code_hash, "654321")

    def test_corrupt_hash_never_matches(self, manager):
        assert not manager.code_matches("not-an-argon2-hash", "123456")


class TestIssue:
    async def test_issue_sends_code_and_stores_hash(self, manager, mock_conn, channel, clock):
        mock_conn.fetchrow.return_value = rate_row(clock)

        issued = await manager.issue(mock_conn, "+15550001111", OTPPurpose.EMERGENCY_ACCESS)

        assert issued.subject == "doc-1"
        assert issued.delivered is True
        assert issued.expires_at == clock.now() + timedelta(minutes=5)
        destination, message = channel.sent[0]
        assert destination == "+15550001111"
        assert issued.code in message

        insert_args = mock_conn.execute.await_args.args
        assert "ON CONFLICT (subject, purpose)" in insert_args[0]
        assert issued.code not in insert_args
        assert "123456" not in repr(issued)

    async def test_issue_is_audited_without_code(self, manager, mock_conn, audit_logger, clock):
        mock_conn.fetchrow.return_value = rate_row(clock)

        issued = await manager.issue(mock_conn, "doc-1", OTPPurpose.EMERGENCY_ACCESS)

        event = audit_logger.log_event.await_args.args[0]
        assert event.event_type == AuditEventType.OTP_ISSUED
        assert event.details.delivered is True
        assert issued.code not in str(event.to_db_row())

    async def test_delivery_failure_keeps_code_valid(self, manager, mock_conn, clock):
        failing = AsyncMock()
        failing.send.return_value = DeliveryResult(status=DeliveryStatus.FAILED, error="HTTP 503")
        manager._channel = failing
        mock_conn.fetchrow.return_value = rate_row(clock)

        issued = await manager.issue(mock_conn, "doc-1", OTPPurpose.EMERGENCY_ACCESS)

        assert issued.delivered is False
        mock_conn.execute.assert_awaited_once()

    async def test_rate_limit(self, manager, mock_conn, clock):
        mock_conn.fetchrow.return_value = rate_row(clock, count=6)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await manager.issue(mock_conn, "doc-1", OTPPurpose.EMERGENCY_ACCESS)

        assert exc_info.value.retry_after == clock.now() + timedelta(minutes=15)
        mock_conn.execute.assert_not_awaited()

    async def test_unknown_identity(self, manager, mock_conn, directory):
        directory.find_by_identifier.return_value = None
        with pytest.raises(IdentityNotFound):
            await manager.issue(mock_conn, "+15559999999", OTPPurpose.LOGIN)

    async def test_wrong_role_for_purpose(self, manager, mock_conn, directory):
        directory.find_by_identifier.return_value = PATIENT
        with pytest.raises(IdentityNotFound):
            await manager.issue(mock_conn, "ana@example.org", OTPPurpose.EMERGENCY_ACCESS)

    async def test_blank_identifier(self, manager, mock_conn):
        with pytest.raises(InputRejected):
            await manager.issue(mock_conn, "   ", OTPPurpose.LOGIN)

    async def test_registration_binds_to_identifier(self, manager, mock_conn, directory, clock):
        mock_conn.fetchrow.return_value = rate_row(clock)

        issued = await manager.issue(mock_conn, "New@Example.org", OTPPurpose.REGISTRATION)

        assert issued.subject == "new@example.org"
        directory.find_by_identifier.assert_not_awaited()


class TestVerify:
    async def test_correct_code_consumed(self, manager, mock_conn, audit_logger, clock):
        mock_conn.fetchrow.return_value = code_row(manager, clock)

        subject = await manager.verify(
            mock_conn, "doc-1", "123456", OTPPurpose.EMERGENCY_ACCESS
        )

        assert subject == "doc-1"
        assert "DELETE FROM one_time_codes" in mock_conn.execute.await_args.args[0]
        event = audit_logger.record.await_args.args[0]
        assert event.event_type == AuditEventType.OTP_VERIFIED

    async def test_wrong_code_counts_attempt(self, manager, mock_conn, audit_logger, clock):
        mock_conn.fetchrow.return_value = code_row(manager, clock)

        with pytest.raises(CredentialError) as exc_info:
            await manager.verify(mock_conn, "doc-1", "000000", OTPPurpose.EMERGENCY_ACCESS)

        assert exc_info.value.failure == CredentialFailure.MISMATCH
        sql, _, attempts = mock_conn.execute.await_args.args
        assert "SET attempts" in sql
        assert attempts == 1
        event = audit_logger.record.await_args.args[0]
        assert event.event_type == AuditEventType.OTP_VERIFICATION_FAILED
        assert event.details.failure == "mismatch"

    async def test_last_attempt_exhausts_code(self, manager, mock_conn, clock):
        mock_conn.fetchrow.return_value = code_row(manager, clock, attempts=2)

        with pytest.raises(CredentialError) as exc_info:
            await manager.verify(mock_conn, "doc-1", "000000", OTPPurpose.EMERGENCY_ACCESS)

        assert exc_info.value.failure == CredentialFailure.MISMATCH
        assert "exhausted = true" in mock_conn.execute.await_args.args[0]

    async def test_exhausted_code_rejects_even_correct_value(self, manager, mock_conn, clock):
        mock_conn.fetchrow.return_value = code_row(
            manager, clock, code_hash=None, attempts=3, exhausted=True
        )

        with pytest.raises(CredentialError) as exc_info:
            await manager.verify(mock_conn, "doc-1", "123456", OTPPurpose.EMERGENCY_ACCESS)

        assert exc_info.value.failure == CredentialFailure.ATTEMPTS_EXHAUSTED

    async def test_expired_code(self, manager, mock_conn, clock):
        mock_conn.fetchrow.return_value = code_row(manager, clock)
        clock.advance(minutes=5)

        with pytest.raises(CredentialError) as exc_info:
            await manager.verify(mock_conn, "doc-1", "123456", OTPPurpose.EMERGENCY_ACCESS)

        assert exc_info.value.failure == CredentialFailure.EXPIRED

    async def test_no_code(self, manager, mock_conn):
        mock_conn.fetchrow.return_value = None

        with pytest.raises(CredentialError) as exc_info:
            await manager.verify(mock_conn, "doc-1", "123456", OTPPurpose.EMERGENCY_ACCESS)

        assert exc_info.value.failure == CredentialFailure.NOT_FOUND

    async def test_unknown_identity_is_not_found(self, manager, mock_conn, directory):
        directory.find_by_identifier.return_value = None

        with pytest.raises(CredentialError) as exc_info:
            await manager.verify(mock_conn, "ghost", "123456", OTPPurpose.LOGIN)

        assert exc_info.value.failure == CredentialFailure.NOT_FOUND

    async def test_audit_can_be_suppressed(self, manager, mock_conn, audit_logger, clock):
        mock_conn.fetchrow.return_value = code_row(manager, clock)

        with pytest.raises(CredentialError):
            await manager.verify(
                mock_conn, "doc-1", "999999", OTPPurpose.EMERGENCY_ACCESS, audit=False
            )

        audit_logger.record.assert_not_awaited()


class TestCleanup:
    async def test_returns_removed_count(self, manager, mock_conn):
        mock_conn.execute.side_effect = ["DELETE 4", "DELETE 1"]
        assert await manager.cleanup_expired(mock_conn) == 4
