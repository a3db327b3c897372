"""Emergency (break-glass) access authorization.

A doctor requests time-limited access to one patient's record. The request
moves through COLLECTING_IDENTITY -> AUTHENTICATING -> CHECKING_DUPLICATE ->
CREATING_SESSION -> MINTING -> DONE, and can end in DENIED from any state.

Every terminal outcome is written to the audit trail: grants, reuse of an
already-live session, and every denial. Input that is simply malformed
(short reason, missing proof) is rejected before anything is looked up and
is not audited.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import NoReturn
from uuid import UUID

import asyncpg

from ..audit.logger import AuditLogger
from ..audit.models import (
    ActorRole,
    AuditEvent,
    AuditEventType,
    EmergencyAccessDeniedDetails,
    EmergencyAccessGrantedDetails,
    EmergencyAccessReusedDetails,
    EmergencySessionExpiredDetails,
    EmergencySessionRevokedDetails,
)
from ..clock import Clock, SystemClock
from ..config import AccessConfig
from .biometric import BiometricVerifier
from .errors import (
    AccessDenied,
    AuthenticationFailed,
    CredentialError,
    EmergencyAccessDenied,
    InputRejected,
    PatientNotIdentified,
    RequesterNotFound,
    SessionConflict,
    SessionFailure,
    SessionNotLive,
    SessionStoreError,
    TargetInactive,
)
from .identities import IdentityDirectory
from .models import (
    AccessReason,
    AuthMethod,
    BiometricModality,
    EmergencySession,
    FlowState,
    Identity,
    OTPPurpose,
    Role,
)
from .otp import OneTimeCodeManager
from .session_store import EmergencySessionStore
from .tokens import TokenService

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 2000

IDENTIFIED_MANUALLY = "manual"
IDENTIFIED_BY_BIOMETRIC = "biometric"


@dataclass
class EmergencyRequest:
    """A doctor's break-glass request.

    ``proof`` is the OTP code or the requester's biometric proof, depending on
    ``method``. When ``patient_identifier`` is blank the patient is identified
    from ``patient_scan`` (the unconscious-patient path).
    """

    requester_id: str
    reason: str
    method: AuthMethod
    proof: str
    patient_identifier: str | None = None
    patient_scan: str | None = None
    scan_modality: BiometricModality = BiometricModality.FINGERPRINT
    hospital_name: str | None = None


@dataclass
class EmergencyGrant:
    session: EmergencySession
    token: str
    patient: Identity
    reused: bool = False
    identification: str = IDENTIFIED_MANUALLY

    @property
    def session_id(self) -> UUID:
        return self.session.session_id

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at


@dataclass
class SessionDetail:
    session: EmergencySession
    patient: Identity | None
    minutes_remaining: float


class EmergencyAccessManager:
    def __init__(
        self,
        store: EmergencySessionStore,
        tokens: TokenService,
        otp: OneTimeCodeManager,
        biometric: BiometricVerifier,
        directory: IdentityDirectory | None = None,
        audit_logger: AuditLogger | None = None,
        config: AccessConfig | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._tokens = tokens
        self._otp = otp
        self._biometric = biometric
        self._directory = directory or IdentityDirectory()
        self._audit_logger = audit_logger
        self._config = config or AccessConfig()
        self._clock = clock or SystemClock()

    def validate_request(self, request: EmergencyRequest) -> str:
        """Reject malformed input. Returns the stripped reason.

        Raises:
            InputRejected: reason too short or too long, or missing proof.
        """
        reason = (request.reason or "").strip()
        min_length = self._config.min_reason_length
        if len(reason) < min_length:
            raise InputRejected(
                f"Reason must be at least {min_length} characters (provided: {len(reason)})"
            )
        if len(reason) > MAX_REASON_LENGTH:
            raise InputRejected(f"Reason cannot exceed {MAX_REASON_LENGTH} characters")
        if not isinstance(request.method, AuthMethod):
            raise InputRejected(f"Unsupported authentication method: {request.method}")
        if not (request.proof or "").strip():
            raise InputRejected("Authentication data is required")
        return reason

    async def request_access(
        self, conn: asyncpg.Connection, request: EmergencyRequest
    ) -> EmergencyGrant:
        """Authenticate the requester and grant (or reuse) an emergency session.

        Raises:
            InputRejected: Malformed request; nothing persisted or audited.
            EmergencyAccessDenied: RequesterNotFound, PatientNotIdentified,
                TargetInactive, AuthenticationFailed or SessionConflict; always
                audited first.
        """
        reason = self.validate_request(request)
        state = FlowState.COLLECTING_IDENTITY

        requester = await self._directory.get(conn, request.requester_id)
        if requester is None or requester.role != Role.DOCTOR:
            await self._deny(
                RequesterNotFound("Requester not found", state),
                request,
                requester=None,
                patient=None,
            )

        patient, identification = await self._resolve_patient(conn, request)
        if patient is None:
            await self._deny(
                PatientNotIdentified("Patient not found", state),
                request,
                requester=requester,
                patient=None,
            )
        if patient.is_retired:
            await self._deny(
                TargetInactive("Patient account is deactivated", state),
                request,
                requester=requester,
                patient=patient,
            )

        state = FlowState.AUTHENTICATING
        try:
            await self._authenticate(conn, requester, request)
        except CredentialError as e:
            await self._deny(
                AuthenticationFailed(f"Authentication failed: {e}", state, e.failure),
                request,
                requester=requester,
                patient=patient,
            )

        # The store checks for a live duplicate and inserts in one transaction.
        state = FlowState.CHECKING_DUPLICATE
        reused = False
        try:
            session = await self._store.create(
                conn,
                requester.identity_id,
                patient.identity_id,
                request.method,
                reason,
                request.hospital_name,
            )
        except SessionStoreError as e:
            if e.failure == SessionFailure.DUPLICATE_ACTIVE_SESSION and e.existing is not None:
                session = e.existing
                reused = True
            elif e.failure == SessionFailure.TARGET_INACTIVE:
                await self._deny(
                    TargetInactive("Patient account is deactivated", state),
                    request,
                    requester=requester,
                    patient=patient,
                )
            elif e.failure == SessionFailure.REQUESTER_NOT_FOUND:
                await self._deny(
                    RequesterNotFound("Requester not found", state),
                    request,
                    requester=requester,
                    patient=patient,
                )
            elif e.failure == SessionFailure.TARGET_NOT_FOUND:
                await self._deny(
                    PatientNotIdentified("Patient not found", state),
                    request,
                    requester=requester,
                    patient=patient,
                )
            elif e.failure == SessionFailure.DUPLICATE_ACTIVE_SESSION:
                await self._deny(
                    SessionConflict("Concurrent emergency request in progress; retry", state),
                    request,
                    requester=requester,
                    patient=patient,
                )
            else:
                raise

        state = FlowState.MINTING
        token = self._tokens.mint_emergency(session)

        grant = EmergencyGrant(
            session=session,
            token=token,
            patient=patient,
            reused=reused,
            identification=identification,
        )
        await self._audit_grant(grant, requester, request)
        return grant

    async def _resolve_patient(
        self, conn: asyncpg.Connection, request: EmergencyRequest
    ) -> tuple[Identity | None, str]:
        identifier = (request.patient_identifier or "").strip()
        if identifier:
            patient = await self._directory.find_by_identifier(conn, identifier, role=Role.PATIENT)
            return patient, IDENTIFIED_MANUALLY

        if request.patient_scan:
            patient = await self._biometric.identify_patient(
                conn, request.scan_modality, request.patient_scan
            )
            return patient, IDENTIFIED_BY_BIOMETRIC

        return None, IDENTIFIED_MANUALLY

    async def _authenticate(
        self, conn: asyncpg.Connection, requester: Identity, request: EmergencyRequest
    ) -> None:
        if request.method == AuthMethod.OTP:
            await self._otp.verify(
                conn,
                requester.identity_id,
                request.proof,
                OTPPurpose.EMERGENCY_ACCESS,
                audit=False,
            )
        else:
            await self._biometric.verify(
                conn,
                requester.identity_id,
                request.method.modality,
                request.proof,
                audit=False,
            )

    async def _deny(
        self,
        denial: EmergencyAccessDenied,
        request: EmergencyRequest,
        requester: Identity | None,
        patient: Identity | None,
    ) -> NoReturn:
        logger.warning(
            "Emergency access denied for requester %s: %s (%s)",
            request.requester_id,
            denial.reason_code,
            denial.state.value,
        )
        failure = denial.failure.value if isinstance(denial, AuthenticationFailed) else None
        if self._audit_logger:
            await self._audit_logger.record(
                AuditEvent(
                    event_type=AuditEventType.EMERGENCY_ACCESS_DENIED,
                    actor_id=requester.identity_id if requester else request.requester_id,
                    actor_role=ActorRole.DOCTOR if requester else ActorRole.ANONYMOUS,
                    patient_id=patient.identity_id if patient else None,
                    details=EmergencyAccessDeniedDetails(
                        result=denial.reason_code,
                        state=denial.state.value,
                        method=request.method.value,
                        failure=failure,
                        hospital_name=request.hospital_name,
                    ),
                )
            )
        raise denial

    async def _audit_grant(
        self,
        grant: EmergencyGrant,
        requester: Identity,
        request: EmergencyRequest,
    ) -> None:
        session = grant.session
        if grant.reused:
            logger.warning(
                "Emergency access reused: %s -> %s (session %s)",
                requester.identity_id,
                grant.patient.identity_id,
                session.session_id,
            )
            details = EmergencyAccessReusedDetails(
                session_id=str(session.session_id),
                method=request.method.value,
                expires_at=session.expires_at.isoformat(),
            )
            event_type = AuditEventType.EMERGENCY_ACCESS_REUSED
        else:
            logger.warning(
                "Emergency access granted: %s -> %s via %s until %s",
                requester.identity_id,
                grant.patient.identity_id,
                request.method.value,
                session.expires_at.isoformat(),
            )
            details = EmergencyAccessGrantedDetails(
                session_id=str(session.session_id),
                method=request.method.value,
                reason=session.reason,
                expires_at=session.expires_at.isoformat(),
                identification=grant.identification,
                hospital_name=session.hospital_name,
            )
            event_type = AuditEventType.EMERGENCY_ACCESS_GRANTED

        if self._audit_logger:
            await self._audit_logger.record(
                AuditEvent(
                    event_type=event_type,
                    actor_id=requester.identity_id,
                    actor_role=ActorRole.DOCTOR,
                    patient_id=grant.patient.identity_id,
                    details=details,
                )
            )

    async def get_session_detail(
        self,
        conn: asyncpg.Connection,
        session_id: UUID,
        requester_id: str | None = None,
    ) -> SessionDetail:
        """Current detail of a live session, for the requester's session view.

        Raises:
            SessionStoreError: NOT_FOUND.
            AccessDenied: The session belongs to a different requester.
            SessionNotLive: The session has expired or been revoked.
        """
        check = await self._store.check_liveness(conn, session_id)
        if check.session is None:
            raise SessionStoreError(SessionFailure.NOT_FOUND, "Emergency session not found")

        session = check.session
        if check.expired_now:
            await self.audit_expiry(session, detected_by="session_view")
        if requester_id is not None and session.requester_id != requester_id:
            raise AccessDenied(AccessReason.INSUFFICIENT_PERMISSIONS)
        if not check.live:
            raise SessionNotLive(f"Emergency session is {session.status.value}")

        patient = await self._directory.get(conn, session.target_id)
        return SessionDetail(
            session=session,
            patient=patient,
            minutes_remaining=session.minutes_remaining(self._clock.now()),
        )

    async def revoke(
        self,
        conn: asyncpg.Connection,
        session_id: UUID,
        revoked_by: str | None = None,
        revoker_role: ActorRole = ActorRole.SYSTEM,
    ) -> EmergencySession:
        session = await self._store.revoke(conn, session_id, revoked_by)
        if self._audit_logger:
            await self._audit_logger.record(
                AuditEvent(
                    event_type=AuditEventType.EMERGENCY_SESSION_REVOKED,
                    actor_id=revoked_by,
                    actor_role=revoker_role,
                    patient_id=session.target_id,
                    details=EmergencySessionRevokedDetails(
                        session_id=str(session.session_id), revoked_by=revoked_by
                    ),
                )
            )
        return session

    async def active_sessions(
        self, conn: asyncpg.Connection, requester_id: str
    ) -> list[EmergencySession]:
        return await self._store.active_for(conn, requester_id)

    async def access_history(
        self, conn: asyncpg.Connection, patient_id: str, limit: int = 50
    ) -> list[EmergencySession]:
        return await self._store.history_for(conn, patient_id, limit=limit)

    async def audit_expiry(self, session: EmergencySession, detected_by: str) -> None:
        if not self._audit_logger:
            return
        await self._audit_logger.record(
            AuditEvent(
                event_type=AuditEventType.EMERGENCY_SESSION_EXPIRED,
                actor_role=ActorRole.SYSTEM,
                patient_id=session.target_id,
                details=EmergencySessionExpiredDetails(
                    session_id=str(session.session_id),
                    expires_at=session.expires_at.isoformat(),
                    detected_by=detected_by,
                ),
            )
        )
