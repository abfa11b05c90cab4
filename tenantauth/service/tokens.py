from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

_REQUIRED_CLAIMS = ("sub", "tenant_id", "role", "iat", "exp", "token_type")


class TokenError(Exception):
    """Base class for token validation failures."""


class TokenExpiredError(TokenError):
    """Signature verified but ``exp`` is in the past."""


class TokenInvalidError(TokenError):
    """Any signature, header, claim or parse failure."""


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    tenant_id: str
    role: str
    iat: int
    exp: int
    token_type: str
    jti: Optional[str] = None


class TokenService:
    """Stateless HS256 issuance and verification of access and refresh tokens.

    Validation never touches storage: a refresh token that verifies here may
    still belong to a revoked session, which callers check separately.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock

    @property
    def access_ttl(self) -> int:
        return self.settings.access_token_expiry

    @property
    def refresh_ttl(self) -> int:
        return self.settings.refresh_token_expiry

    def issue_access(self, user_id: str, tenant_id: str, role: str) -> str:
        return self._issue(user_id, tenant_id, role, ACCESS_TOKEN, self.access_ttl)

    def issue_refresh(
        self, user_id: str, tenant_id: str, role: str, jti: Optional[str] = None
    ) -> str:
        # jti keeps two refresh tokens minted in the same second distinct
        return self._issue(
            user_id,
            tenant_id,
            role,
            REFRESH_TOKEN,
            self.refresh_ttl,
            jti=jti or str(uuid.uuid4()),
        )

    def validate(self, token: str) -> TokenClaims:
        payload = self._decode_jwt(token)
        if payload is None:
            raise TokenInvalidError("invalid token")
        try:
            claims = TokenClaims(
                sub=str(payload["sub"]),
                tenant_id=str(payload["tenant_id"]),
                role=str(payload["role"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
                token_type=str(payload["token_type"]),
                jti=str(payload["jti"]) if payload.get("jti") is not None else None,
            )
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("invalid token")
        if claims.token_type not in (ACCESS_TOKEN, REFRESH_TOKEN):
            raise TokenInvalidError("invalid token")
        if self._clock() > claims.exp:
            raise TokenExpiredError("token expired")
        return claims

    def _issue(
        self,
        user_id: str,
        tenant_id: str,
        role: str,
        token_type: str,
        ttl_seconds: int,
        *,
        jti: Optional[str] = None,
    ) -> str:
        now = int(self._clock())
        payload: dict[str, Any] = {
            "sub": user_id,
            "tenant_id": tenant_id,
            "role": role,
            "iat": now,
            "exp": now + ttl_seconds,
            "token_type": token_type,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        if jti is not None:
            payload["jti"] = jti
        return self._encode_jwt(payload)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload when header, signature, issuer and audience check out.

        Expiry is left to the caller so an expired token can be told apart
        from a forged one.
        """
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # only HS256 is accepted
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        try:
            signature_ok = hmac.compare_digest(expected_sig, sig_b64)
        except TypeError:
            # non-ASCII signature segment
            return None
        if not signature_ok:
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            return None
        return payload
