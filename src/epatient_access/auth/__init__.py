"""Credential verification, emergency sessions and access decisions.

HIPAA Reference: 164.312(d) - Person or Entity Authentication
HIPAA Reference: 164.312(a)(1) - Access Controls
HIPAA Reference: 164.312(a)(2)(ii) - Emergency Access Procedure
"""

from .access import AccessDecision, AccessDecisionEngine
from .biometric import BiometricMatcher, BiometricVerifier, PlaceholderMatcher
from .emergency_access import EmergencyAccessManager, EmergencyGrant, EmergencyRequest
from .errors import (
    AccessControlError,
    AccessDenied,
    CredentialError,
    CredentialFailure,
    EmergencyAccessDenied,
    ErrorKind,
    InputRejected,
    SessionConflict,
    SessionStoreError,
    TokenError,
)
from .identities import IdentityDirectory
from .models import (
    AccessReason,
    AuthMethod,
    BiometricModality,
    EmergencySession,
    Identity,
    OTPPurpose,
    Role,
    SessionStatus,
    TokenClaims,
    TokenKind,
)
from .otp import OneTimeCodeManager
from .schema import AccessSchemaManager
from .session_store import EmergencySessionStore
from .sweeper import SessionSweeper
from .tokens import TokenService

__all__ = [
    "AccessControlError",
    "AccessDecision",
    "AccessDecisionEngine",
    "AccessDenied",
    "AccessReason",
    "AccessSchemaManager",
    "AuthMethod",
    "BiometricMatcher",
    "BiometricModality",
    "BiometricVerifier",
    "CredentialError",
    "CredentialFailure",
    "EmergencyAccessDenied",
    "EmergencyAccessManager",
    "EmergencyGrant",
    "EmergencyRequest",
    "EmergencySession",
    "EmergencySessionStore",
    "ErrorKind",
    "Identity",
    "IdentityDirectory",
    "InputRejected",
    "OTPPurpose",
    "OneTimeCodeManager",
    "PlaceholderMatcher",
    "Role",
    "SessionSweeper",
    "SessionConflict",
    "SessionStatus",
    "SessionStoreError",
    "TokenClaims",
    "TokenError",
    "TokenKind",
    "TokenService",
]
