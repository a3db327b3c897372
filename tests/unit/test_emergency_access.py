"""Tests for the break-glass authorization flow."""

from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from conftest import TEST_JWT_SECRET

from epatient_access.audit.models import ActorRole, AuditEventType
from epatient_access.auth.emergency_access import (
    IDENTIFIED_BY_BIOMETRIC,
    EmergencyAccessManager,
    EmergencyRequest,
)
from epatient_access.auth.errors import (
    AccessDenied,
    AuthenticationFailed,
    CredentialError,
    CredentialFailure,
    InputRejected,
    PatientNotIdentified,
    RequesterNotFound,
    SessionConflict,
    SessionFailure,
    SessionNotLive,
    SessionStoreError,
    TargetInactive,
)
from epatient_access.auth.models import (
    AuthMethod,
    BiometricModality,
    EmergencySession,
    FlowState,
    Identity,
    OTPPurpose,
    Role,
    SessionStatus,
)
from epatient_access.auth.session_store import LivenessCheck
from epatient_access.auth.tokens import TokenService

DOCTOR = Identity(identity_id="doc-1", role=Role.DOCTOR, display_name="Dr. Lee", phone="+1555")
PATIENT = Identity(identity_id="pat-1", role=Role.PATIENT, display_name="Ana", phone="+1556")
REASON = "Unconscious patient in ER, allergies needed"


def make_session(clock, status=SessionStatus.ACTIVE, requester_id="doc-1"):
    now = clock.now()
    return EmergencySession(
        session_id=uuid4(),
        requester_id=requester_id,
        target_id="pat-1",
        method=AuthMethod.OTP,
        reason=REASON,
        granted_at=now,
        expires_at=now + timedelta(minutes=10),
        status=status,
    )


def make_request(**overrides) -> EmergencyRequest:
    fields = {
        "requester_id": "doc-1",
        "reason": REASON,
        "method": AuthMethod.OTP,
        "proof": "123456",
        "patient_identifier": "+1556",
    }
    fields.update(overrides)
    return EmergencyRequest(**fields)


@pytest.fixture
def directory():
    directory = AsyncMock()
    directory.get.return_value = DOCTOR
    directory.find_by_identifier.return_value = PATIENT
    return directory


@pytest.fixture
def store(clock):
    store = AsyncMock()
    store.create.return_value = make_session(clock)
    return store


@pytest.fixture
def otp():
    return AsyncMock()


@pytest.fixture
def biometric():
    return AsyncMock()


@pytest.fixture
def manager(store, otp, biometric, directory, audit_logger, config, clock):
    return EmergencyAccessManager(
        store=store,
        tokens=TokenService(TEST_JWT_SECRET, clock=clock),
        otp=otp,
        biometric=biometric,
        directory=directory,
        audit_logger=audit_logger,
        config=config,
        clock=clock,
    )


def recorded_events(audit_logger):
    return [call.args[0] for call in audit_logger.record.await_args_list]


class TestValidation:
    @pytest.mark.parametrize("reason", ["", "   ", "too short", "  padded  "])
    async def test_short_reason_rejected_without_audit(
        self, manager, mock_conn, directory, audit_logger, reason
    ):
        with pytest.raises(InputRejected, match="at least 10 characters"):
            await manager.request_access(mock_conn, make_request(reason=reason))

        directory.get.assert_not_awaited()
        audit_logger.record.assert_not_awaited()

    async def test_missing_proof_rejected(self, manager, mock_conn, audit_logger):
        with pytest.raises(InputRejected, match="Authentication data"):
            await manager.request_access(mock_conn, make_request(proof="  "))

        audit_logger.record.assert_not_awaited()

    async def test_overlong_reason_rejected(self, manager):
        with pytest.raises(InputRejected, match="cannot exceed"):
            manager.validate_request(make_request(reason="x" * 2001))

    def test_reason_is_stripped(self, manager):
        assert manager.validate_request(make_request(reason=f"  {REASON}  ")) == REASON


class TestGrant:
    async def test_otp_grant(self, manager, mock_conn, store, otp, audit_logger, clock):
        grant = await manager.request_access(mock_conn, make_request(hospital_name="General"))

        assert grant.reused is False
        assert grant.patient == PATIENT
        otp.verify.assert_awaited_once_with(
            mock_conn, "doc-1", "123456", OTPPurpose.EMERGENCY_ACCESS, audit=False
        )
        store.create.assert_awaited_once_with(
            mock_conn, "doc-1", "pat-1", AuthMethod.OTP, REASON, "General"
        )

        claims = TokenService(TEST_JWT_SECRET, clock=clock).validate(grant.token)
        assert claims.session_id == grant.session_id
        assert claims.expires_at == grant.expires_at

        event = recorded_events(audit_logger)[-1]
        assert event.event_type == AuditEventType.EMERGENCY_ACCESS_GRANTED
        assert event.actor_id == "doc-1"
        assert event.patient_id == "pat-1"
        assert event.details.reason == REASON
        assert event.details.identification == "manual"

    async def test_biometric_grant(self, manager, mock_conn, biometric, otp):
        await manager.request_access(
            mock_conn, make_request(method=AuthMethod.IRIS, proof="iris_scan")
        )

        biometric.verify.assert_awaited_once_with(
            mock_conn, "doc-1", BiometricModality.IRIS, "iris_scan", audit=False
        )
        otp.verify.assert_not_awaited()

    async def test_unconscious_patient_identified_by_scan(
        self, manager, mock_conn, biometric, directory, audit_logger
    ):
        biometric.identify_patient.return_value = PATIENT

        grant = await manager.request_access(
            mock_conn,
            make_request(patient_identifier=None, patient_scan="fingerprint_scan"),
        )

        assert grant.identification == IDENTIFIED_BY_BIOMETRIC
        biometric.identify_patient.assert_awaited_once_with(
            mock_conn, BiometricModality.FINGERPRINT, "fingerprint_scan"
        )
        directory.find_by_identifier.assert_not_awaited()
        assert recorded_events(audit_logger)[0].details.identification == "biometric"

    async def test_live_session_is_reused(self, manager, mock_conn, store, audit_logger, clock):
        existing = make_session(clock)
        store.create.side_effect = SessionStoreError(
            SessionFailure.DUPLICATE_ACTIVE_SESSION, existing=existing
        )

        grant = await manager.request_access(mock_conn, make_request())

        assert grant.reused is True
        assert grant.session_id == existing.session_id
        event = recorded_events(audit_logger)[-1]
        assert event.event_type == AuditEventType.EMERGENCY_ACCESS_REUSED
        assert event.details.session_id == str(existing.session_id)


class TestDenial:
    async def test_unknown_requester(self, manager, mock_conn, directory, audit_logger):
        directory.get.return_value = None

        with pytest.raises(RequesterNotFound) as exc_info:
            await manager.request_access(mock_conn, make_request(requester_id="ghost"))

        assert exc_info.value.state == FlowState.COLLECTING_IDENTITY
        event = recorded_events(audit_logger)[-1]
        assert event.event_type == AuditEventType.EMERGENCY_ACCESS_DENIED
        assert event.actor_role == ActorRole.ANONYMOUS
        assert event.actor_id == "ghost"
        assert event.details.result == "REQUESTER_NOT_FOUND"

    async def test_patient_requester_is_not_a_doctor(self, manager, mock_conn, directory):
        directory.get.return_value = PATIENT

        with pytest.raises(RequesterNotFound):
            await manager.request_access(mock_conn, make_request(requester_id="pat-1"))

    async def test_patient_not_found(self, manager, mock_conn, directory, audit_logger):
        directory.find_by_identifier.return_value = None

        with pytest.raises(PatientNotIdentified):
            await manager.request_access(mock_conn, make_request())

        event = recorded_events(audit_logger)[-1]
        assert event.details.result == "PATIENT_NOT_FOUND"
        assert event.patient_id is None

    async def test_no_patient_information(self, manager, mock_conn, audit_logger):
        with pytest.raises(PatientNotIdentified):
            await manager.request_access(mock_conn, make_request(patient_identifier=None))

        assert len(recorded_events(audit_logger)) == 1

    async def test_retired_patient(self, manager, mock_conn, directory, otp, clock):
        directory.find_by_identifier.return_value = Identity(
            identity_id="pat-1", role=Role.PATIENT, display_name="Ana", retired_at=clock.now()
        )

        with pytest.raises(TargetInactive):
            await manager.request_access(mock_conn, make_request())

        otp.verify.assert_not_awaited()

    async def test_wrong_otp(self, manager, mock_conn, otp, store, audit_logger):
        otp.verify.side_effect = CredentialError(CredentialFailure.MISMATCH)

        with pytest.raises(AuthenticationFailed) as exc_info:
            await manager.request_access(mock_conn, make_request())

        assert exc_info.value.state == FlowState.AUTHENTICATING
        assert exc_info.value.failure == CredentialFailure.MISMATCH
        store.create.assert_not_awaited()
        event = recorded_events(audit_logger)[-1]
        assert event.details.result == "AUTH_FAILED"
        assert event.details.failure == "mismatch"
        assert event.patient_id == "pat-1"

    async def test_no_biometric_reference(self, manager, mock_conn, biometric):
        biometric.verify.side_effect = CredentialError(CredentialFailure.NO_REFERENCE_ENROLLED)

        with pytest.raises(AuthenticationFailed) as exc_info:
            await manager.request_access(
                mock_conn, make_request(method=AuthMethod.FINGERPRINT, proof="fingerprint_x")
            )

        assert exc_info.value.failure == CredentialFailure.NO_REFERENCE_ENROLLED

    async def test_patient_retired_during_request(self, manager, mock_conn, store, audit_logger):
        store.create.side_effect = SessionStoreError(SessionFailure.TARGET_INACTIVE)

        with pytest.raises(TargetInactive) as exc_info:
            await manager.request_access(mock_conn, make_request())

        assert exc_info.value.state == FlowState.CHECKING_DUPLICATE
        assert recorded_events(audit_logger)[0].details.result == "PATIENT_DEACTIVATED"

    async def test_duplicate_without_reusable_session_is_audited(
        self, manager, mock_conn, store, audit_logger
    ):
        store.create.side_effect = SessionStoreError(SessionFailure.DUPLICATE_ACTIVE_SESSION)

        with pytest.raises(SessionConflict):
            await manager.request_access(mock_conn, make_request())

        event = recorded_events(audit_logger)[-1]
        assert event.event_type == AuditEventType.EMERGENCY_ACCESS_DENIED
        assert event.details.result == "SESSION_CONFLICT"
        assert event.details.state == FlowState.CHECKING_DUPLICATE.value


class TestSessionView:
    async def test_live_session_detail(self, manager, mock_conn, store, directory, clock):
        session = make_session(clock)
        store.check_liveness.return_value = LivenessCheck(live=True, session=session)
        directory.get.return_value = PATIENT
        clock.advance(minutes=4)

        detail = await manager.get_session_detail(mock_conn, session.session_id, "doc-1")

        assert detail.patient == PATIENT
        assert detail.minutes_remaining == pytest.approx(6)

    async def test_other_requester_denied(self, manager, mock_conn, store, clock):
        session = make_session(clock)
        store.check_liveness.return_value = LivenessCheck(live=True, session=session)

        with pytest.raises(AccessDenied):
            await manager.get_session_detail(mock_conn, session.session_id, "doc-2")

    async def test_expiry_detected_on_view_is_audited(
        self, manager, mock_conn, store, audit_logger, clock
    ):
        session = make_session(clock, status=SessionStatus.EXPIRED)
        store.check_liveness.return_value = LivenessCheck(
            live=False, session=session, expired_now=True
        )

        with pytest.raises(SessionNotLive):
            await manager.get_session_detail(mock_conn, session.session_id)

        event = recorded_events(audit_logger)[-1]
        assert event.event_type == AuditEventType.EMERGENCY_SESSION_EXPIRED
        assert event.details.detected_by == "session_view"

    async def test_unknown_session(self, manager, mock_conn, store):
        store.check_liveness.return_value = LivenessCheck(live=False, session=None)

        with pytest.raises(SessionStoreError) as exc_info:
            await manager.get_session_detail(mock_conn, uuid4())

        assert exc_info.value.failure == SessionFailure.NOT_FOUND


class TestRevoke:
    async def test_revoke_is_audited(self, manager, mock_conn, store, audit_logger, clock):
        session = make_session(clock, status=SessionStatus.REVOKED)
        store.revoke.return_value = session

        await manager.revoke(mock_conn, session.session_id, "op-1", ActorRole.OPERATOR)

        store.revoke.assert_awaited_once_with(mock_conn, session.session_id, "op-1")
        event = recorded_events(audit_logger)[-1]
        assert event.event_type == AuditEventType.EMERGENCY_SESSION_REVOKED
        assert event.actor_role == ActorRole.OPERATOR
        assert event.patient_id == "pat-1"

    async def test_terminal_session_not_audited(self, manager, mock_conn, store, audit_logger):
        store.revoke.side_effect = SessionStoreError(SessionFailure.ALREADY_TERMINAL)

        with pytest.raises(SessionStoreError):
            await manager.revoke(mock_conn, uuid4(), "op-1")

        audit_logger.record.assert_not_awaited()
