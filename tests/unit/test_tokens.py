"""Tests for regular and emergency bearer tokens."""

from datetime import timedelta
from uuid import uuid4

import jwt
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from epatient_access.auth.errors import TokenError, TokenFailure
from epatient_access.auth.models import (
    AuthMethod,
    EmergencySession,
    Identity,
    Role,
    TokenKind,
)
from epatient_access.auth.tokens import JWT_ALGORITHM, TOKEN_ISSUER, TokenService
from epatient_access.clock import ManualClock
from epatient_access.secrets import MaskedSecret

SECRET = "test-signing-key-0123456789abcdef0123456789"


def make_session(clock: ManualClock, minutes: int = 10) -> EmergencySession:
    now = clock.now()
    return EmergencySession(
        session_id=uuid4(),
        requester_id="doc-1",
        target_id="pat-1",
        method=AuthMethod.OTP,
        reason="Unconscious patient in ER",
        granted_at=now,
        expires_at=now + timedelta(minutes=minutes),
    )


@pytest.fixture
def service(clock):
    return TokenService(MaskedSecret(SECRET), clock=clock)


class TestRegularTokens:
    def test_round_trip_claims(self, service, clock):
        identity = Identity(identity_id="pat-1", role=Role.PATIENT, display_name="Ana")
        claims = service.validate(service.mint_regular(identity))

        assert claims.subject == "pat-1"
        assert claims.role == Role.PATIENT
        assert claims.kind == TokenKind.REGULAR
        assert claims.session_id is None
        assert claims.expires_at - claims.issued_at == timedelta(hours=24)

    def test_expired_after_ttl(self, service, clock):
        identity = Identity(identity_id="doc-1", role=Role.DOCTOR, display_name="Dr. Lee")
        token = service.mint_regular(identity)

        clock.advance(hours=24)

        with pytest.raises(TokenError) as exc_info:
            service.validate(token)
        assert exc_info.value.failure == TokenFailure.EXPIRED


class TestEmergencyTokens:
    def test_expiry_equals_session_expiry(self, service, clock):
        session = make_session(clock)
        claims = service.validate(service.mint_emergency(session))

        assert claims.kind == TokenKind.EMERGENCY
        assert claims.role == Role.DOCTOR
        assert claims.session_id == session.session_id
        assert claims.target_id == "pat-1"
        assert claims.expires_at == session.expires_at

    def test_valid_until_sub_second_session_expiry(self, service, clock):
        clock.advance(microseconds=900_000)
        session = make_session(clock)
        token = service.mint_emergency(session)

        clock.set(session.expires_at - timedelta(milliseconds=500))

        assert session.is_live_at(clock.now())
        claims = service.validate(token)
        assert claims.expires_at >= session.expires_at
        assert claims.expires_at - session.expires_at < timedelta(seconds=1)

    def test_rejected_once_session_window_passes(self, service, clock):
        token = service.mint_emergency(make_session(clock))
        clock.advance(minutes=10)

        with pytest.raises(TokenError) as exc_info:
            service.validate(token)
        assert exc_info.value.failure == TokenFailure.EXPIRED

    def test_cannot_mint_for_overdue_session(self, service, clock):
        session = make_session(clock)
        clock.advance(minutes=11)
        with pytest.raises(ValueError, match="already expired"):
            service.mint_emergency(session)


class TestValidation:
    def test_wrong_key_is_signature_failure(self, service, clock):
        other = TokenService("another-signing-key-0123456789abcdefgh", clock=clock)
        token = other.mint_emergency(make_session(clock))

        with pytest.raises(TokenError) as exc_info:
            service.validate(token)
        assert exc_info.value.failure == TokenFailure.SIGNATURE_INVALID

    def test_garbage_is_malformed(self, service):
        with pytest.raises(TokenError) as exc_info:
            service.validate("not.a.token")
        assert exc_info.value.failure == TokenFailure.MALFORMED

    def test_empty_is_malformed(self, service):
        with pytest.raises(TokenError) as exc_info:
            service.validate("")
        assert exc_info.value.failure == TokenFailure.MALFORMED

    def test_emergency_without_session_claim_is_malformed(self, service, clock):
        now = int(clock.now().timestamp())
        token = jwt.encode(
            {
                "sub": "doc-1",
                "role": "DOCTOR",
                "kind": "emergency",
                "iat": now,
                "exp": now + 600,
                "iss": TOKEN_ISSUER,
            },
            SECRET,
            algorithm=JWT_ALGORITHM,
        )
        with pytest.raises(TokenError) as exc_info:
            service.validate(token)
        assert exc_info.value.failure == TokenFailure.MALFORMED

    def test_unsigned_token_rejected(self, service, clock):
        now = int(clock.now().timestamp())
        token = jwt.encode(
            {"sub": "doc-1", "role": "DOCTOR", "kind": "regular", "iat": now, "exp": now + 60,
             "iss": TOKEN_ISSUER},
            key=None,
            algorithm="none",
        )
        with pytest.raises(TokenError):
            service.validate(token)

    @settings(max_examples=50)
    @given(st.text(max_size=200))
    def test_arbitrary_input_never_validates(self, text):
        service = TokenService(SECRET, clock=ManualClock())
        with pytest.raises(TokenError):
            service.validate(text)


class TestBearerHeader:
    def test_extracts_token(self):
        assert TokenService.bearer_from_header("Bearer abc.def.ghi") == "abc.def.ghi"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer   "])
    def test_missing_or_wrong_scheme(self, header):
        with pytest.raises(TokenError):
            TokenService.bearer_from_header(header)
