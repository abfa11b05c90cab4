"""Tests for HS256 access/refresh token issuance and validation."""

import base64
import json
import uuid

import pytest

from tenantauth.config import Settings
from tenantauth.service.tokens import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TokenExpiredError,
    TokenInvalidError,
    TokenService,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _settings(**overrides) -> Settings:
    values = {
        "jwt_secret": "unit-test-secret-that-is-long-enough-for-hs256",
        "access_token_expiry": 900,
        "refresh_token_expiry": 3600,
    }
    values.update(overrides)
    return Settings(**values)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(clock):
    return TokenService(_settings(), clock=clock)


USER_ID = str(uuid.uuid4())
TENANT_ID = str(uuid.uuid4())


class TestIssueAndValidate:
    def test_access_token_round_trip(self, tokens, clock):
        claims = tokens.validate(tokens.issue_access(USER_ID, TENANT_ID, "admin"))
        assert claims.sub == USER_ID
        assert claims.tenant_id == TENANT_ID
        assert claims.role == "admin"
        assert claims.token_type == ACCESS_TOKEN
        assert claims.exp - claims.iat == 900
        assert claims.jti is None

    def test_refresh_token_carries_session_jti(self, tokens):
        token = tokens.issue_refresh(USER_ID, TENANT_ID, "user", "session-1")
        claims = tokens.validate(token)
        assert claims.token_type == REFRESH_TOKEN
        assert claims.jti == "session-1"
        assert claims.exp - claims.iat == 3600

    def test_refresh_tokens_in_same_second_differ(self, tokens):
        first = tokens.issue_refresh(USER_ID, TENANT_ID, "user")
        second = tokens.issue_refresh(USER_ID, TENANT_ID, "user")
        assert first != second
        assert tokens.validate(first).jti != tokens.validate(second).jti


class TestExpiry:
    def test_expired_token_is_distinguished(self, tokens, clock):
        token = tokens.issue_access(USER_ID, TENANT_ID, "user")
        clock.now += 901
        with pytest.raises(TokenExpiredError):
            tokens.validate(token)

    def test_token_valid_until_exp_second(self, tokens, clock):
        token = tokens.issue_access(USER_ID, TENANT_ID, "user")
        clock.now += 900
        assert tokens.validate(token).sub == USER_ID


class TestTampering:
    """Every signature, header or claim failure is reported as invalid."""

    def test_modified_payload_is_invalid(self, tokens):
        header, _, sig = tokens.issue_access(USER_ID, TENANT_ID, "user").split(".")
        forged = _segment(
            {
                "sub": USER_ID,
                "tenant_id": TENANT_ID,
                "role": "admin",
                "iat": 0,
                "exp": 9_999_999_999,
                "token_type": ACCESS_TOKEN,
                "iss": "tenantauth",
                "aud": "tenantauth-clients",
            }
        )
        with pytest.raises(TokenInvalidError):
            tokens.validate(f"{header}.{forged}.{sig}")

    def test_other_secret_is_invalid(self, tokens, clock):
        other = TokenService(_settings(jwt_secret="a-different-secret-" * 3), clock=clock)
        with pytest.raises(TokenInvalidError):
            tokens.validate(other.issue_access(USER_ID, TENANT_ID, "user"))

    def test_none_algorithm_is_rejected(self, tokens):
        _, payload, _ = tokens.issue_access(USER_ID, TENANT_ID, "user").split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        with pytest.raises(TokenInvalidError):
            tokens.validate(f"{header}.{payload}.")

    def test_wrong_audience_is_invalid(self, tokens, clock):
        other = TokenService(_settings(jwt_audience="someone-else"), clock=clock)
        with pytest.raises(TokenInvalidError):
            tokens.validate(other.issue_access(USER_ID, TENANT_ID, "user"))

    def test_wrong_issuer_is_invalid(self, tokens, clock):
        other = TokenService(_settings(jwt_issuer="someone-else"), clock=clock)
        with pytest.raises(TokenInvalidError):
            tokens.validate(other.issue_access(USER_ID, TENANT_ID, "user"))

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "ä.ö.ü"])
    def test_garbage_is_invalid(self, tokens, token):
        with pytest.raises(TokenInvalidError):
            tokens.validate(token)

    def test_missing_claim_is_invalid(self, tokens, clock):
        payload = {
            "sub": USER_ID,
            "role": "user",
            "iat": int(clock.now),
            "exp": int(clock.now) + 60,
            "token_type": ACCESS_TOKEN,
            "iss": "tenantauth",
            "aud": "tenantauth-clients",
        }
        with pytest.raises(TokenInvalidError):
            tokens.validate(tokens._encode_jwt(payload))

    def test_unknown_token_type_is_invalid(self, tokens, clock):
        payload = {
            "sub": USER_ID,
            "tenant_id": TENANT_ID,
            "role": "user",
            "iat": int(clock.now),
            "exp": int(clock.now) + 60,
            "token_type": "id",
            "iss": "tenantauth",
            "aud": "tenantauth-clients",
        }
        with pytest.raises(TokenInvalidError):
            tokens.validate(tokens._encode_jwt(payload))
