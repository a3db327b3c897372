"""Audit event models.

The event taxonomy is closed and every event type has exactly one detail
payload shape, so queries and exports can be typed end to end.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class AuditEventType(Enum):
    OTP_ISSUED = "OTP_ISSUED"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_VERIFICATION_FAILED = "OTP_VERIFICATION_FAILED"
    BIOMETRIC_ENROLLED = "BIOMETRIC_ENROLLED"
    BIOMETRIC_VERIFIED = "BIOMETRIC_VERIFIED"
    BIOMETRIC_VERIFICATION_FAILED = "BIOMETRIC_VERIFICATION_FAILED"
    EMERGENCY_ACCESS_GRANTED = "EMERGENCY_ACCESS_GRANTED"
    EMERGENCY_ACCESS_REUSED = "EMERGENCY_ACCESS_REUSED"
    EMERGENCY_ACCESS_DENIED = "EMERGENCY_ACCESS_DENIED"
    EMERGENCY_SESSION_REVOKED = "EMERGENCY_SESSION_REVOKED"
    EMERGENCY_SESSION_EXPIRED = "EMERGENCY_SESSION_EXPIRED"
    ACCESS_ALLOWED = "ACCESS_ALLOWED"
    ACCESS_DENIED = "ACCESS_DENIED"
    AUDIT_EXPORTED = "AUDIT_EXPORTED"
    AUDIT_PURGED = "AUDIT_PURGED"


class ActorRole(Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    OPERATOR = "OPERATOR"
    SYSTEM = "SYSTEM"
    ANONYMOUS = "ANONYMOUS"


FAILURE_EVENT_TYPES = frozenset(
    {
        AuditEventType.OTP_VERIFICATION_FAILED,
        AuditEventType.BIOMETRIC_VERIFICATION_FAILED,
        AuditEventType.EMERGENCY_ACCESS_DENIED,
        AuditEventType.ACCESS_DENIED,
    }
)


@dataclass(frozen=True)
class OTPIssuedDetails:
    purpose: str
    delivered: bool
    expires_at: str


@dataclass(frozen=True)
class OTPVerifiedDetails:
    purpose: str


@dataclass(frozen=True)
class OTPVerificationFailedDetails:
    purpose: str
    failure: str


@dataclass(frozen=True)
class BiometricEnrolledDetails:
    modality: str


@dataclass(frozen=True)
class BiometricVerifiedDetails:
    modality: str


@dataclass(frozen=True)
class BiometricVerificationFailedDetails:
    modality: str
    failure: str


@dataclass(frozen=True)
class EmergencyAccessGrantedDetails:
    session_id: str
    method: str
    reason: str
    expires_at: str
    identification: str
    hospital_name: str | None = None


@dataclass(frozen=True)
class EmergencyAccessReusedDetails:
    session_id: str
    method: str
    expires_at: str


@dataclass(frozen=True)
class EmergencyAccessDeniedDetails:
    result: str
    state: str
    method: str | None = None
    failure: str | None = None
    hospital_name: str | None = None


@dataclass(frozen=True)
class EmergencySessionRevokedDetails:
    session_id: str
    revoked_by: str | None = None


@dataclass(frozen=True)
class EmergencySessionExpiredDetails:
    session_id: str
    expires_at: str
    detected_by: str


@dataclass(frozen=True)
class AccessDecisionDetails:
    action: str
    reason: str
    resource_type: str = "patient"
    token_kind: str | None = None
    session_id: str | None = None
    hospital_id: str | None = None


@dataclass(frozen=True)
class AuditExportedDetails:
    row_count: int
    filters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditPurgedDetails:
    cutoff: str
    deleted_count: int


AuditDetails = (
    OTPIssuedDetails
    | OTPVerifiedDetails
    | OTPVerificationFailedDetails
    | BiometricEnrolledDetails
    | BiometricVerifiedDetails
    | BiometricVerificationFailedDetails
    | EmergencyAccessGrantedDetails
    | EmergencyAccessReusedDetails
    | EmergencyAccessDeniedDetails
    | EmergencySessionRevokedDetails
    | EmergencySessionExpiredDetails
    | AccessDecisionDetails
    | AuditExportedDetails
    | AuditPurgedDetails
)

DETAIL_TYPES: dict[AuditEventType, type] = {
    AuditEventType.OTP_ISSUED: OTPIssuedDetails,
    AuditEventType.OTP_VERIFIED: OTPVerifiedDetails,
    AuditEventType.OTP_VERIFICATION_FAILED: OTPVerificationFailedDetails,
    AuditEventType.BIOMETRIC_ENROLLED: BiometricEnrolledDetails,
    AuditEventType.BIOMETRIC_VERIFIED: BiometricVerifiedDetails,
    AuditEventType.BIOMETRIC_VERIFICATION_FAILED: BiometricVerificationFailedDetails,
    AuditEventType.EMERGENCY_ACCESS_GRANTED: EmergencyAccessGrantedDetails,
    AuditEventType.EMERGENCY_ACCESS_REUSED: EmergencyAccessReusedDetails,
    AuditEventType.EMERGENCY_ACCESS_DENIED: EmergencyAccessDeniedDetails,
    AuditEventType.EMERGENCY_SESSION_REVOKED: EmergencySessionRevokedDetails,
    AuditEventType.EMERGENCY_SESSION_EXPIRED: EmergencySessionExpiredDetails,
    AuditEventType.ACCESS_ALLOWED: AccessDecisionDetails,
    AuditEventType.ACCESS_DENIED: AccessDecisionDetails,
    AuditEventType.AUDIT_EXPORTED: AuditExportedDetails,
    AuditEventType.AUDIT_PURGED: AuditPurgedDetails,
}


def details_from_dict(event_type: AuditEventType, data: dict[str, Any]) -> AuditDetails:
    """Rebuild the typed payload for a stored event, ignoring unknown keys."""
    detail_cls = DETAIL_TYPES[event_type]
    known = detail_cls.__dataclass_fields__.keys()
    return detail_cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class AuditEvent:
    event_type: AuditEventType
    actor_role: ActorRole
    details: AuditDetails
    actor_id: str | None = None
    patient_id: str | None = None
    event_id: UUID = field(default_factory=uuid4)
    event_time: datetime | None = None
    client_ip: str | None = None
    client_hostname: str | None = None
    application_name: str = "epatient-access"
    request_id: UUID | None = None

    def __post_init__(self) -> None:
        expected = DETAIL_TYPES[self.event_type]
        if not isinstance(self.details, expected):
            raise TypeError(
                f"{self.event_type.value} requires {expected.__name__} details, "
                f"got {type(self.details).__name__}"
            )

    @property
    def success(self) -> bool:
        return self.event_type not in FAILURE_EVENT_TYPES

    def to_db_row(self) -> dict[str, Any]:
        """Convert to dict suitable for database insertion."""
        return {
            "event_id": self.event_id,
            "event_time": self.event_time,
            "event_type": self.event_type.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value,
            "patient_id": self.patient_id,
            "success": self.success,
            "details": asdict(self.details),
            "client_ip": self.client_ip,
            "client_hostname": self.client_hostname,
            "application_name": self.application_name,
            "request_id": self.request_id,
        }

    @classmethod
    def from_db_row(cls, row: dict) -> "AuditEvent":
        event_type = AuditEventType(row["event_type"])
        return cls(
            event_type=event_type,
            actor_role=ActorRole(row["actor_role"]),
            details=details_from_dict(event_type, row.get("details") or {}),
            actor_id=row.get("actor_id"),
            patient_id=row.get("patient_id"),
            event_id=row["event_id"],
            event_time=row.get("event_time"),
            client_ip=row.get("client_ip"),
            client_hostname=row.get("client_hostname"),
            application_name=row.get("application_name") or "epatient-access",
            request_id=row.get("request_id"),
        )
