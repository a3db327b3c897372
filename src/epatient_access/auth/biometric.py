"""Biometric verification contract.

A reference must be enrolled for (identity, modality) before verification.
The matching step is delegated to a BiometricMatcher. The only matcher
shipped here is PlaceholderMatcher, which performs no comparison at all and
must be replaced by a real matcher before production use.
"""

import logging
from typing import Protocol
from uuid import uuid4

import asyncpg

from ..audit.logger import AuditLogger
from ..audit.models import (
    ActorRole,
    AuditEvent,
    AuditEventType,
    BiometricEnrolledDetails,
    BiometricVerificationFailedDetails,
    BiometricVerifiedDetails,
)
from ..clock import Clock, SystemClock
from .errors import CredentialError, CredentialFailure, IdentityNotFound, InputRejected
from .identities import IdentityDirectory
from .models import BiometricModality, BiometricReference, Identity, Role

logger = logging.getLogger(__name__)

DEFAULT_MAX_CANDIDATES = 1000


class BiometricMatcher(Protocol):
    async def match(self, reference: BiometricReference, proof: str) -> bool: ...


class PlaceholderMatcher:
    """Accepts any non-empty proof. NOT a biometric matcher."""

    def __init__(self) -> None:
        logger.warning(
            "PlaceholderMatcher in use: biometric proofs are not compared against references"
        )

    async def match(self, reference: BiometricReference, proof: str) -> bool:
        return bool(proof)


class BiometricVerifier:
    def __init__(
        self,
        matcher: BiometricMatcher | None = None,
        directory: IdentityDirectory | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Clock | None = None,
    ):
        self._matcher = matcher or PlaceholderMatcher()
        self._directory = directory or IdentityDirectory()
        self._audit_logger = audit_logger
        self._clock = clock or SystemClock()

    async def enroll(
        self,
        conn: asyncpg.Connection,
        identity_id: str,
        modality: BiometricModality,
        reference_ref: str | None = None,
    ) -> BiometricReference:
        """Enroll a reference marker. An existing reference is returned unchanged."""
        identity = await self._directory.get(conn, identity_id)
        if identity is None:
            raise IdentityNotFound()
        if identity.is_retired:
            raise InputRejected("Retired identities cannot enroll biometrics")

        ref = reference_ref or f"{modality.value.lower()}_{uuid4().hex}"
        row = await conn.fetchrow(
            """
            INSERT INTO biometric_references (identity_id, modality, reference_ref, enrolled_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (identity_id, modality) DO NOTHING
            RETURNING identity_id, modality, reference_ref, enrolled_at
            """,
            identity_id,
            modality.value,
            ref,
            self._clock.now(),
        )

        if row is None:
            existing = await self.get_reference(conn, identity_id, modality)
            logger.info("%s already enrolled for %s", modality.value, identity_id)
            return existing

        reference = BiometricReference.from_db_row(dict(row))
        logger.info("Enrolled %s reference for %s", modality.value, identity_id)

        if self._audit_logger:
            await self._audit_logger.record(
                AuditEvent(
                    event_type=AuditEventType.BIOMETRIC_ENROLLED,
                    actor_id=identity_id,
                    actor_role=ActorRole(identity.role.value),
                    patient_id=identity_id if identity.role == Role.PATIENT else None,
                    details=BiometricEnrolledDetails(modality=modality.value),
                )
            )
        return reference

    async def get_reference(
        self,
        conn: asyncpg.Connection,
        identity_id: str,
        modality: BiometricModality,
    ) -> BiometricReference | None:
        row = await conn.fetchrow(
            """
            SELECT identity_id, modality, reference_ref, enrolled_at
            FROM biometric_references
            WHERE identity_id = $1 AND modality = $2
            """,
            identity_id,
            modality.value,
        )
        return BiometricReference.from_db_row(dict(row)) if row else None

    async def list_modalities(
        self, conn: asyncpg.Connection, identity_id: str
    ) -> set[BiometricModality]:
        rows = await conn.fetch(
            "SELECT modality FROM biometric_references WHERE identity_id = $1",
            identity_id,
        )
        return {BiometricModality(row["modality"]) for row in rows}

    async def verify(
        self,
        conn: asyncpg.Connection,
        identity_id: str,
        modality: BiometricModality,
        proof: str,
        audit: bool = True,
    ) -> BiometricReference:
        """Verify a biometric proof for an identity.

        Raises:
            CredentialError: NO_REFERENCE_ENROLLED or VERIFICATION_FAILED.
        """
        reference = await self.get_reference(conn, identity_id, modality)

        failure = None
        if reference is None:
            failure = CredentialFailure.NO_REFERENCE_ENROLLED
        elif not await self._matcher.match(reference, proof):
            failure = CredentialFailure.VERIFICATION_FAILED

        if audit and self._audit_logger:
            identity = await self._directory.get(conn, identity_id)
            await self._audit_verification(identity, identity_id, modality, failure)

        if failure is not None:
            raise CredentialError(failure, f"{modality.value.title()} verification failed")
        return reference

    async def identify_patient(
        self,
        conn: asyncpg.Connection,
        modality: BiometricModality,
        proof: str,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
    ) -> Identity | None:
        """Find the enrolled, non-retired patient whose reference matches a scan."""
        if not proof:
            return None

        rows = await conn.fetch(
            """
            SELECT r.identity_id, r.modality, r.reference_ref, r.enrolled_at
            FROM biometric_references r
            JOIN identities i ON i.identity_id = r.identity_id
            WHERE r.modality = $1 AND i.role = 'PATIENT' AND i.retired_at IS NULL
            ORDER BY r.enrolled_at
            LIMIT $2
            """,
            modality.value,
            max_candidates,
        )
        for row in rows:
            reference = BiometricReference.from_db_row(dict(row))
            if await self._matcher.match(reference, proof):
                logger.info("Patient identified through %s scan", modality.value.lower())
                return await self._directory.get(conn, reference.identity_id)
        return None

    async def _audit_verification(
        self,
        identity: Identity | None,
        identity_id: str,
        modality: BiometricModality,
        failure: CredentialFailure | None,
    ) -> None:
        actor_role = ActorRole(identity.role.value) if identity else ActorRole.ANONYMOUS
        if failure is None:
            event = AuditEvent(
                event_type=AuditEventType.BIOMETRIC_VERIFIED,
                actor_id=identity_id,
                actor_role=actor_role,
                details=BiometricVerifiedDetails(modality=modality.value),
            )
        else:
            event = AuditEvent(
                event_type=AuditEventType.BIOMETRIC_VERIFICATION_FAILED,
                actor_id=identity_id,
                actor_role=actor_role,
                details=BiometricVerificationFailedDetails(
                    modality=modality.value, failure=failure.value
                ),
            )
        await self._audit_logger.record(event)
