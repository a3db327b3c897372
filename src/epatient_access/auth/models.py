"""Identity, credential, session and token models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID


class Role(Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    OPERATOR = "OPERATOR"


class OTPPurpose(Enum):
    LOGIN = "LOGIN"
    REGISTRATION = "REGISTRATION"
    EMERGENCY_ACCESS = "EMERGENCY_ACCESS"
    OPERATOR_LOGIN = "OPERATOR_LOGIN"


class BiometricModality(Enum):
    FINGERPRINT = "FINGERPRINT"
    IRIS = "IRIS"


class AuthMethod(Enum):
    OTP = "OTP"
    FINGERPRINT = "FINGERPRINT"
    IRIS = "IRIS"

    @property
    def modality(self) -> BiometricModality | None:
        if self is AuthMethod.OTP:
            return None
        return BiometricModality(self.value)


class SessionStatus(Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class TokenKind(Enum):
    REGULAR = "regular"
    EMERGENCY = "emergency"


class FlowState(Enum):
    COLLECTING_IDENTITY = "collecting_identity"
    AUTHENTICATING = "authenticating"
    CHECKING_DUPLICATE = "checking_duplicate"
    CREATING_SESSION = "creating_session"
    MINTING = "minting"
    DONE = "done"
    DENIED = "denied"


class AccessReason(Enum):
    SELF_ACCESS = "SELF_ACCESS"
    EMERGENCY_SESSION = "EMERGENCY_SESSION"
    OPERATOR_HOSPITAL = "OPERATOR_HOSPITAL"
    INVALID_TOKEN = "INVALID_TOKEN"
    SESSION_EXPIRED_OR_REVOKED = "SESSION_EXPIRED_OR_REVOKED"
    WRONG_PATIENT_FOR_SESSION = "WRONG_PATIENT_FOR_SESSION"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"


@dataclass
class Identity:
    identity_id: str
    role: Role
    display_name: str
    phone: str | None = None
    email: str | None = None
    hospital_id: str | None = None
    retired_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "Identity":
        return cls(
            identity_id=row["identity_id"],
            role=Role(row["role"]),
            display_name=row["display_name"],
            phone=row.get("phone"),
            email=row.get("email"),
            hospital_id=row.get("hospital_id"),
            retired_at=row.get("retired_at"),
            created_at=row.get("created_at"),
        )

    @property
    def is_retired(self) -> bool:
        return self.retired_at is not None

    @property
    def contact(self) -> str | None:
        return self.phone or self.email


@dataclass
class OneTimeCode:
    code_id: UUID
    subject: str
    purpose: OTPPurpose
    code_hash: str | None
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    exhausted: bool = False

    @classmethod
    def from_db_row(cls, row: dict) -> "OneTimeCode":
        return cls(
            code_id=row["code_id"],
            subject=row["subject"],
            purpose=OTPPurpose(row["purpose"]),
            code_hash=row.get("code_hash"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            attempts=row.get("attempts", 0),
            max_attempts=row.get("max_attempts", 3),
            exhausted=row.get("exhausted", False),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class IssuedCode:
    """Result of issuing a one-time code.

    The plaintext code is kept out of repr so it never lands in a log line.
    """

    subject: str
    purpose: OTPPurpose
    expires_at: datetime
    delivered: bool
    code: str = field(repr=False)


@dataclass
class BiometricReference:
    identity_id: str
    modality: BiometricModality
    reference_ref: str
    enrolled_at: datetime

    @classmethod
    def from_db_row(cls, row: dict) -> "BiometricReference":
        return cls(
            identity_id=row["identity_id"],
            modality=BiometricModality(row["modality"]),
            reference_ref=row["reference_ref"],
            enrolled_at=row["enrolled_at"],
        )


@dataclass
class EmergencySession:
    session_id: UUID
    requester_id: str
    target_id: str
    method: AuthMethod
    reason: str
    granted_at: datetime
    expires_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    hospital_name: str | None = None
    ended_at: datetime | None = None
    revoked_by: str | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "EmergencySession":
        return cls(
            session_id=row["session_id"],
            requester_id=row["requester_id"],
            target_id=row["target_id"],
            method=AuthMethod(row["method"]),
            reason=row["reason"],
            granted_at=row["granted_at"],
            expires_at=row["expires_at"],
            status=SessionStatus(row["status"]),
            hospital_name=row.get("hospital_name"),
            ended_at=row.get("ended_at"),
            revoked_by=row.get("revoked_by"),
        )

    def is_live_at(self, now: datetime) -> bool:
        return self.status == SessionStatus.ACTIVE and now < self.expires_at

    def status_at(self, now: datetime) -> SessionStatus:
        """Status as observed at ``now``, counting overdue ACTIVE rows as EXPIRED."""
        if self.status == SessionStatus.ACTIVE and now >= self.expires_at:
            return SessionStatus.EXPIRED
        return self.status

    def minutes_remaining(self, now: datetime) -> float:
        if not self.is_live_at(now):
            return 0
        return max(0, (self.expires_at - now).total_seconds() / 60)

    def to_dict(self) -> dict:
        return {
            "session_id": str(self.session_id),
            "requester_id": self.requester_id,
            "target_id": self.target_id,
            "method": self.method.value,
            "reason": self.reason,
            "hospital_name": self.hospital_name,
            "granted_at": self.granted_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "revoked_by": self.revoked_by,
        }


@dataclass
class TokenClaims:
    subject: str
    role: Role
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    session_id: UUID | None = None
    target_id: str | None = None

    @property
    def is_emergency(self) -> bool:
        return self.kind == TokenKind.EMERGENCY
