"""Typed failures for credential, token, session and access operations.

Every exception carries an ErrorKind so the outer layer can map it to a
response without inspecting messages.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from .models import AccessReason, FlowState

if TYPE_CHECKING:
    from .models import EmergencySession


class ErrorKind(Enum):
    INPUT_REJECTED = "input_rejected"
    AUTHENTICATION_FAILED = "authentication_failed"
    AUTHORIZATION_DENIED = "authorization_denied"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"


class AccessControlError(Exception):
    kind: ErrorKind = ErrorKind.TRANSIENT


class InputRejected(AccessControlError, ValueError):
    """Malformed or insufficient input. Nothing is persisted or audited."""

    kind = ErrorKind.INPUT_REJECTED


class RateLimitExceeded(InputRejected):
    def __init__(self, message: str, retry_after: datetime):
        super().__init__(message)
        self.retry_after = retry_after


class IdentityNotFound(AccessControlError):
    """Unknown identity. The message never says which identifier was tried."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "Identity not found"):
        super().__init__(message)


class CredentialFailure(Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    MISMATCH = "mismatch"
    NO_REFERENCE_ENROLLED = "no_reference_enrolled"
    VERIFICATION_FAILED = "verification_failed"


class CredentialError(AccessControlError):
    kind = ErrorKind.AUTHENTICATION_FAILED

    def __init__(self, failure: CredentialFailure, message: str | None = None):
        super().__init__(message or f"Credential verification failed: {failure.value}")
        self.failure = failure


class TokenFailure(Enum):
    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"


class TokenError(AccessControlError):
    kind = ErrorKind.AUTHENTICATION_FAILED

    def __init__(self, failure: TokenFailure, message: str | None = None):
        super().__init__(message or f"Token rejected: {failure.value}")
        self.failure = failure


class SessionFailure(Enum):
    REQUESTER_NOT_FOUND = "requester_not_found"
    TARGET_NOT_FOUND = "target_not_found"
    TARGET_INACTIVE = "target_inactive"
    DUPLICATE_ACTIVE_SESSION = "duplicate_active_session"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"


_SESSION_FAILURE_KINDS = {
    SessionFailure.REQUESTER_NOT_FOUND: ErrorKind.NOT_FOUND,
    SessionFailure.TARGET_NOT_FOUND: ErrorKind.NOT_FOUND,
    SessionFailure.NOT_FOUND: ErrorKind.NOT_FOUND,
    SessionFailure.TARGET_INACTIVE: ErrorKind.AUTHORIZATION_DENIED,
    SessionFailure.DUPLICATE_ACTIVE_SESSION: ErrorKind.CONFLICT,
    SessionFailure.ALREADY_TERMINAL: ErrorKind.CONFLICT,
}


class SessionStoreError(AccessControlError):
    def __init__(
        self,
        failure: SessionFailure,
        message: str | None = None,
        existing: "EmergencySession | None" = None,
    ):
        super().__init__(message or f"Emergency session operation failed: {failure.value}")
        self.failure = failure
        self.existing = existing

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return _SESSION_FAILURE_KINDS[self.failure]


class EmergencyAccessDenied(AccessControlError):
    """A terminal denial of an emergency access request. Always audited."""

    kind = ErrorKind.AUTHORIZATION_DENIED
    reason_code = "DENIED"

    def __init__(self, message: str, state: FlowState):
        super().__init__(message)
        self.state = state


class RequesterNotFound(EmergencyAccessDenied):
    kind = ErrorKind.NOT_FOUND
    reason_code = "REQUESTER_NOT_FOUND"


class PatientNotIdentified(EmergencyAccessDenied):
    kind = ErrorKind.NOT_FOUND
    reason_code = "PATIENT_NOT_FOUND"


class TargetInactive(EmergencyAccessDenied):
    reason_code = "PATIENT_DEACTIVATED"


class SessionConflict(EmergencyAccessDenied):
    """A concurrent request held the pair and no session could be reused."""

    kind = ErrorKind.CONFLICT
    reason_code = "SESSION_CONFLICT"


class AuthenticationFailed(EmergencyAccessDenied):
    kind = ErrorKind.AUTHENTICATION_FAILED
    reason_code = "AUTH_FAILED"

    def __init__(self, message: str, state: FlowState, failure: CredentialFailure):
        super().__init__(message, state)
        self.failure = failure


class SessionNotLive(AccessControlError):
    kind = ErrorKind.AUTHORIZATION_DENIED


class AccessDenied(AccessControlError):
    kind = ErrorKind.AUTHORIZATION_DENIED

    def __init__(self, reason: AccessReason, message: str | None = None):
        super().__init__(message or f"Access denied: {reason.value}")
        self.reason = reason
