"""Signed bearer tokens for regular and emergency access.

A token is a claim, not a source of truth. Validating an emergency token
says nothing about whether its session is still live; callers must check the
session store separately.
"""

import logging
import math
from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt

from ..clock import Clock, SystemClock
from ..config import AccessConfig
from ..secrets import MaskedSecret
from .errors import TokenError, TokenFailure
from .models import EmergencySession, Identity, Role, TokenClaims, TokenKind

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
TOKEN_ISSUER = "epatient-access"
BEARER_PREFIX = "bearer "


class TokenService:
    def __init__(
        self,
        secret: MaskedSecret | str,
        config: AccessConfig | None = None,
        clock: Clock | None = None,
    ):
        self._secret = secret.get_value() if isinstance(secret, MaskedSecret) else secret
        self._config = config or AccessConfig()
        self._clock = clock or SystemClock()

    def _encode(self, payload: dict) -> str:
        payload["iss"] = TOKEN_ISSUER
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def mint_regular(self, identity: Identity) -> str:
        now = self._clock.now()
        expires_at = now + timedelta(hours=self._config.regular_ttl_hours)
        return self._encode(
            {
                "sub": identity.identity_id,
                "role": identity.role.value,
                "kind": TokenKind.REGULAR.value,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
            }
        )

    def mint_emergency(self, session: EmergencySession) -> str:
        """Mint a token that expires when the session does.

        JWT expiry has whole-second resolution, so ``exp`` rounds up; session
        liveness is checked separately and stays authoritative.
        """
        now = self._clock.now()
        if session.expires_at <= now:
            raise ValueError(f"Emergency session {session.session_id} has already expired")

        return self._encode(
            {
                "sub": session.requester_id,
                "role": Role.DOCTOR.value,
                "kind": TokenKind.EMERGENCY.value,
                "sid": str(session.session_id),
                "tgt": session.target_id,
                "iat": int(now.timestamp()),
                "exp": math.ceil(session.expires_at.timestamp()),
            }
        )

    def validate(self, token: str) -> TokenClaims:
        """Check signature, shape and expiry.

        Raises:
            TokenError: MALFORMED, SIGNATURE_INVALID or EXPIRED.
        """
        if not token:
            raise TokenError(TokenFailure.MALFORMED, "Token is empty")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                issuer=TOKEN_ISSUER,
                options={
                    "require": ["sub", "iat", "exp", "iss"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as e:
            logger.debug("Token signature rejected: %s", e)
            raise TokenError(TokenFailure.SIGNATURE_INVALID) from None
        except jwt.InvalidTokenError as e:
            logger.debug("Invalid token: %s", e)
            raise TokenError(TokenFailure.MALFORMED) from None

        claims = self._claims_from_payload(payload)
        if self._clock.now() >= claims.expires_at:
            logger.debug("Token expired")
            raise TokenError(TokenFailure.EXPIRED)
        return claims

    def _claims_from_payload(self, payload: dict) -> TokenClaims:
        try:
            kind = TokenKind(payload.get("kind"))
            role = Role(payload.get("role"))
            session_id = None
            target_id = None
            if kind == TokenKind.EMERGENCY:
                session_id = UUID(payload["sid"])
                target_id = str(payload["tgt"])
            return TokenClaims(
                subject=str(payload["sub"]),
                role=role,
                kind=kind,
                issued_at=datetime.fromtimestamp(int(payload["iat"]), UTC),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), UTC),
                session_id=session_id,
                target_id=target_id,
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.debug("Token claims malformed: %s", e)
            raise TokenError(TokenFailure.MALFORMED) from None

    @staticmethod
    def bearer_from_header(value: str | None) -> str:
        """Extract the token from an ``Authorization: Bearer <token>`` header value."""
        if not value or not value.lower().startswith(BEARER_PREFIX):
            raise TokenError(TokenFailure.MALFORMED, "Authorization token required")
        token = value[len(BEARER_PREFIX) :].strip()
        if not token:
            raise TokenError(TokenFailure.MALFORMED, "Authorization token required")
        return token
