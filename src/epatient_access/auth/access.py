"""Allow/deny decisions for patient-scoped and hospital-scoped resources.

Default deny: a request is allowed only by patient self-access, a live
emergency session for that exact patient, or (for hospital resources) an
operator of the same hospital. Every decision is audited.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import ParamSpec, TypeVar
from uuid import UUID

import asyncpg

from ..audit.logger import AuditLogger
from ..audit.models import (
    AccessDecisionDetails,
    ActorRole,
    AuditEvent,
    AuditEventType,
    EmergencySessionExpiredDetails,
)
from .errors import AccessDenied, TokenError
from .identities import IdentityDirectory
from .models import AccessReason, Role, TokenClaims, TokenKind
from .session_store import EmergencySessionStore
from .tokens import TokenService

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


@dataclass
class AccessDecision:
    allowed: bool
    reason: AccessReason
    actor_id: str | None = None
    actor_role: Role | None = None
    patient_id: str | None = None
    hospital_id: str | None = None
    session_id: UUID | None = None
    token_kind: TokenKind | None = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value if self.actor_role else None,
            "patient_id": self.patient_id,
            "hospital_id": self.hospital_id,
            "session_id": str(self.session_id) if self.session_id else None,
            "token_kind": self.token_kind.value if self.token_kind else None,
        }


def _decision(
    claims: TokenClaims | None,
    allowed: bool,
    reason: AccessReason,
    patient_id: str | None = None,
    hospital_id: str | None = None,
) -> AccessDecision:
    return AccessDecision(
        allowed=allowed,
        reason=reason,
        actor_id=claims.subject if claims else None,
        actor_role=claims.role if claims else None,
        patient_id=patient_id,
        hospital_id=hospital_id,
        session_id=claims.session_id if claims else None,
        token_kind=claims.kind if claims else None,
    )


class AccessDecisionEngine:
    def __init__(
        self,
        tokens: TokenService,
        store: EmergencySessionStore,
        directory: IdentityDirectory | None = None,
        audit_logger: AuditLogger | None = None,
    ):
        self._tokens = tokens
        self._store = store
        self._directory = directory or IdentityDirectory()
        self._audit_logger = audit_logger

    async def decide(
        self,
        conn: asyncpg.Connection,
        token: str,
        patient_id: str,
        action: str = "read",
    ) -> AccessDecision:
        """Decide whether ``token`` may perform ``action`` on ``patient_id``'s record."""
        try:
            claims = self._tokens.validate(token)
        except TokenError as e:
            logger.info("Access to patient record denied: token %s", e.failure.value)
            decision = _decision(None, False, AccessReason.INVALID_TOKEN, patient_id=patient_id)
        else:
            decision = await self._evaluate_patient_access(conn, claims, patient_id)

        await self._audit(decision, action, resource_type="patient")
        return decision

    async def _evaluate_patient_access(
        self, conn: asyncpg.Connection, claims: TokenClaims, patient_id: str
    ) -> AccessDecision:
        if claims.is_emergency:
            check = await self._store.check_liveness(conn, claims.session_id)
            if check.expired_now:
                await self._audit_expiry(check.session)

            if not check.live:
                return _decision(
                    claims, False, AccessReason.SESSION_EXPIRED_OR_REVOKED, patient_id=patient_id
                )

            session = check.session
            if session.requester_id != claims.subject:
                return _decision(
                    claims, False, AccessReason.INSUFFICIENT_PERMISSIONS, patient_id=patient_id
                )
            if session.target_id == patient_id and claims.target_id == patient_id:
                return _decision(claims, True, AccessReason.EMERGENCY_SESSION, patient_id=patient_id)
            return _decision(
                claims, False, AccessReason.WRONG_PATIENT_FOR_SESSION, patient_id=patient_id
            )

        if claims.role == Role.PATIENT and claims.subject == patient_id:
            return _decision(claims, True, AccessReason.SELF_ACCESS, patient_id=patient_id)

        return _decision(claims, False, AccessReason.INSUFFICIENT_PERMISSIONS, patient_id=patient_id)

    async def decide_for_hospital(
        self,
        conn: asyncpg.Connection,
        token: str,
        hospital_id: str,
        action: str = "append",
    ) -> AccessDecision:
        """Operator access is scoped by hospital membership, not by patient."""
        try:
            claims = self._tokens.validate(token)
        except TokenError:
            decision = _decision(None, False, AccessReason.INVALID_TOKEN, hospital_id=hospital_id)
        else:
            allowed = False
            if claims.kind == TokenKind.REGULAR and claims.role == Role.OPERATOR:
                operator_hospital = await self._directory.hospital_of(conn, claims.subject)
                allowed = operator_hospital is not None and operator_hospital == hospital_id
            decision = _decision(
                claims,
                allowed,
                AccessReason.OPERATOR_HOSPITAL if allowed else AccessReason.INSUFFICIENT_PERMISSIONS,
                hospital_id=hospital_id,
            )

        await self._audit(decision, action, resource_type="hospital")
        return decision

    async def require_patient_access(
        self,
        conn: asyncpg.Connection,
        token: str,
        patient_id: str,
        action: str = "read",
    ) -> AccessDecision:
        """Like ``decide``, but raises AccessDenied instead of returning a denial."""
        decision = await self.decide(conn, token, patient_id, action)
        if not decision.allowed:
            raise AccessDenied(decision.reason)
        return decision

    def guard(self, action: str = "read") -> Callable:
        """Decorator for async handlers that take ``conn``, ``token`` and ``patient_id``.

        The handler only runs when the token is allowed to reach the patient's
        record; otherwise AccessDenied is raised.
        """

        def decorator(func: Callable[P, R]) -> Callable[P, R]:
            @wraps(func)
            async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
                conn = kwargs.get("conn")
                if conn is None:
                    for arg in args:
                        if isinstance(arg, asyncpg.Connection):
                            conn = arg
                            break
                token = kwargs.get("token")
                patient_id = kwargs.get("patient_id")

                if conn is None or token is None or patient_id is None:
                    raise AccessDenied(
                        AccessReason.INSUFFICIENT_PERMISSIONS,
                        "Guarded handler called without conn, token and patient_id",
                    )

                await self.require_patient_access(conn, token, patient_id, action)
                return await func(*args, **kwargs)

            return wrapper

        return decorator

    async def _audit(self, decision: AccessDecision, action: str, resource_type: str) -> None:
        log = logger.info if decision.allowed else logger.warning
        log(
            "%s %s on %s %s: %s",
            "Allowed" if decision.allowed else "Denied",
            action,
            resource_type,
            decision.patient_id or decision.hospital_id,
            decision.reason.value,
        )

        if not self._audit_logger:
            return
        await self._audit_logger.record(
            AuditEvent(
                event_type=(
                    AuditEventType.ACCESS_ALLOWED if decision.allowed else AuditEventType.ACCESS_DENIED
                ),
                actor_id=decision.actor_id,
                actor_role=(
                    ActorRole(decision.actor_role.value)
                    if decision.actor_role
                    else ActorRole.ANONYMOUS
                ),
                patient_id=decision.patient_id,
                details=AccessDecisionDetails(
                    action=action,
                    reason=decision.reason.value,
                    resource_type=resource_type,
                    token_kind=decision.token_kind.value if decision.token_kind else None,
                    session_id=str(decision.session_id) if decision.session_id else None,
                    hospital_id=decision.hospital_id,
                ),
            )
        )

    async def _audit_expiry(self, session) -> None:
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
                    detected_by="access_check",
                ),
            )
        )
