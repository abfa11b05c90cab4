from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.service.activity import ActivityLogger
from tenantauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
    SessionExpiredError,
    ValidationError,
)
from tenantauth.service.identity import (
    DEFAULT_ROLE,
    AccountLinkConflict,
    IdentityResolver,
)
from tenantauth.service.invitations import InvitationGate
from tenantauth.service.sessions import ClientInfo, SessionService
from tenantauth.service.tokens import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TokenClaims,
    TokenExpiredError,
    TokenInvalidError,
    TokenService,
)
from tenantauth.service.validators import (
    normalize_email,
    validate_email,
    validate_password,
    validate_username,
)
from tenantauth.service.workers import CryptoExecutor

logger = get_logger(__name__)

VALID_ROLES = ("user", "admin")

# Shared by unknown, deleted and wrong-password logins
INVALID_LOGIN_MESSAGE = "username or email or password invalid"
INTERNAL_FAILURE_MESSAGE = "internal error"


@dataclass
class AuthResult:
    user_id: str
    access_token: str
    expires_in: int
    role: str
    tenant_id: str


@dataclass
class UserProfile:
    id: str
    username: str
    email: str
    created_at: datetime
    updated_at: datetime
    role: str


@dataclass
class Principal:
    user_id: str
    tenant_id: str
    role: str


class AuthService:
    """Register, login, logout, refresh and password-change flows.

    Every flow records one activity entry through the non-blocking logger.
    Hashing and signing run on the crypto executor.
    """

    def __init__(
        self,
        identity: IdentityResolver,
        sessions: SessionService,
        tokens: TokenService,
        invitations: InvitationGate,
        activity: ActivityLogger,
        executor: CryptoExecutor,
    ) -> None:
        self.identity = identity
        self.sessions = sessions
        self.tokens = tokens
        self.invitations = invitations
        self.activity = activity
        self.executor = executor
        self.logger = logger

    async def _validate_token(self, token: str) -> TokenClaims:
        try:
            return await self.executor.run(self.tokens.validate, token)
        except TokenExpiredError:
            raise SessionExpiredError("Token expired")
        except TokenInvalidError:
            raise AuthenticationError("Unauthorized")

    async def _issue_access(self, user_id: str, tenant_id: str, role: str) -> str:
        return await self.executor.run(self.tokens.issue_access, user_id, tenant_id, role)

    async def register(
        self,
        *,
        tenant_id: str,
        username: str,
        email: str,
        password: str,
        role: str = DEFAULT_ROLE,
        invitation_code: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        try:
            username = validate_username(username)
            email = validate_email(email)
            validate_password(password)
            if role not in VALID_ROLES:
                raise BadRequestError(
                    "Bad Request",
                    detail={"errors": [{"field": "role", "message": "Bad Request"}]},
                )
            if role != DEFAULT_ROLE and not self.invitations.validate_and_consume(
                invitation_code
            ):
                raise ForbiddenError("Invalid or missing invitation code")
            result = await self.identity.resolve_registration(
                tenant_id=tenant_id,
                username=username,
                email=email,
                password=password,
                role=role,
            )
        except AccountLinkConflict as exc:
            self.activity.failure("register", exc.message, user_id=exc.user_id, client=client)
            raise
        except ServiceError as exc:
            self.activity.failure("register", exc.message, client=client)
            raise
        except Exception:
            self.activity.failure("register", INTERNAL_FAILURE_MESSAGE, client=client)
            raise

        access_token = await self._issue_access(result.user.id, tenant_id, result.role)
        self.activity.success("register", user_id=result.user.id, client=client)
        self.logger.info(
            "user_registered",
            user_id=result.user.id,
            tenant_id=tenant_id,
            role=result.role,
            outcome=result.outcome,
        )
        return AuthResult(
            user_id=result.user.id,
            access_token=access_token,
            expires_in=self.tokens.access_ttl,
            role=result.role,
            tenant_id=tenant_id,
        )

    async def login(
        self,
        *,
        tenant_id: str,
        identifier: str,
        password: str,
        role: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Tuple[AuthResult, str]:
        """Authenticate and open a session.

        Returns the auth result and the raw refresh token; the token is for
        the transport's cookie and must not be echoed in a response body.
        """
        try:
            return await self._login(tenant_id, identifier, password, role, client)
        except ServiceError:
            raise
        except Exception:
            self.activity.failure("login", INTERNAL_FAILURE_MESSAGE, client=client)
            raise

    async def _login(
        self,
        tenant_id: str,
        identifier: str,
        password: str,
        role: Optional[str],
        client: Optional[ClientInfo],
    ) -> Tuple[AuthResult, str]:
        identifier = (identifier or "").strip()
        user = None
        email = normalize_email(identifier)
        if "@" in email:
            user = self.identity.find_user_by_email(email, include_deleted=True)
        if user is None:
            user = self.identity.find_user_by_username(identifier, include_deleted=True)
        if user is None or user.is_deleted:
            self.activity.failure("login", "unknown or deleted account", client=client)
            raise AuthenticationError(INVALID_LOGIN_MESSAGE)

        if not await self.identity.verify_password(user.id, password):
            self.activity.failure("login", "invalid password", user_id=user.id, client=client)
            raise AuthenticationError(INVALID_LOGIN_MESSAGE)

        roles = self.identity.roles_in_tenant(user.id, tenant_id)
        if not roles:
            self.activity.failure(
                "login", "no membership in tenant", user_id=user.id, client=client
            )
            raise AuthenticationError("User not authorized for this tenant")

        if role:
            if role not in roles:
                self.activity.failure(
                    "login_role_mismatch",
                    f"role {role} not held in tenant",
                    user_id=user.id,
                    client=client,
                )
                raise NotFoundError("User not found")
            chosen_role = role
        else:
            chosen_role = DEFAULT_ROLE if DEFAULT_ROLE in roles else roles[0]

        access_token = await self._issue_access(user.id, tenant_id, chosen_role)
        session_id = str(uuid.uuid4())
        refresh_token = await self.executor.run(
            self.tokens.issue_refresh, user.id, tenant_id, chosen_role, session_id
        )
        self.sessions.open(user.id, refresh_token, session_id=session_id, client=client)

        self.activity.success("login", user_id=user.id, client=client)
        self.logger.info(
            "user_logged_in", user_id=user.id, tenant_id=tenant_id, role=chosen_role
        )
        return (
            AuthResult(
                user_id=user.id,
                access_token=access_token,
                expires_in=self.tokens.access_ttl,
                role=chosen_role,
                tenant_id=tenant_id,
            ),
            refresh_token,
        )

    async def logout(
        self,
        user_id: str,
        refresh_token: Optional[str],
        *,
        client: Optional[ClientInfo] = None,
    ) -> None:
        if not refresh_token:
            self.activity.failure(
                "logout", "refresh token not found", user_id=user_id, client=client
            )
            raise AuthenticationError("Refresh token not found")
        session = self.sessions.find_by_refresh_token(refresh_token)
        if session is not None:
            self.sessions.revoke(session.id)
        self.activity.success("logout", user_id=user_id, client=client)
        self.logger.info("user_logged_out", user_id=user_id, session_found=session is not None)

    async def sso_logout(
        self,
        refresh_token: Optional[str],
        *,
        client: Optional[ClientInfo] = None,
    ) -> Optional[str]:
        """Cookie-only logout; repeating it with a spent cookie succeeds silently.

        Returns the owning user id when a session was found.
        """
        if not refresh_token:
            self.activity.failure("sso_logout", "refresh token not found", client=client)
            raise AuthenticationError("Unauthorized")
        session = self.sessions.find_by_refresh_token(refresh_token)
        if session is None:
            self.logger.info("sso_logout_session_absent")
            return None
        try:
            self.sessions.revoke(session.id)
        except NotFoundError:
            # a concurrent logout removed it first
            self.logger.info("sso_logout_session_already_removed", session_id=session.id)
        self.activity.success("sso_logout", user_id=session.user_id, client=client)
        return session.user_id

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        tenant_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Tuple[str, int]:
        """Mint a new access token from a live refresh session.

        The refresh token itself is not rotated and stays valid until its
        session is revoked or it expires. When `tenant_id` is given the token
        must have been issued in that tenant.
        """
        if not refresh_token:
            self.activity.failure("refresh_token", "refresh token not found", client=client)
            raise AuthenticationError("Unauthorized")
        try:
            claims = await self._validate_token(refresh_token)
            if claims.token_type != REFRESH_TOKEN:
                raise AuthenticationError("Unauthorized")
            try:
                uuid.UUID(claims.sub)
                uuid.UUID(claims.tenant_id)
            except ValueError:
                raise AuthenticationError("Unauthorized")
            if tenant_id is not None and claims.tenant_id != tenant_id:
                self.logger.warning(
                    "refresh_tenant_mismatch",
                    user_id=claims.sub,
                    token_tenant_id=claims.tenant_id,
                    api_key_tenant_id=tenant_id,
                )
                raise ForbiddenError("Forbidden")
            session = self.sessions.find_by_refresh_token(refresh_token)
            if session is None or session.user_id != claims.sub:
                self.logger.warning("refresh_session_not_found", user_id=claims.sub)
                raise AuthenticationError("Unauthorized")
            if self.identity.get_user(claims.sub) is None:
                self.logger.warning("refresh_user_not_found", user_id=claims.sub)
                raise AuthenticationError("Unauthorized")
        except ServiceError as exc:
            self.activity.failure("refresh_token", exc.message, client=client)
            raise
        except Exception:
            self.activity.failure("refresh_token", INTERNAL_FAILURE_MESSAGE, client=client)
            raise

        access_token = await self._issue_access(claims.sub, claims.tenant_id, claims.role)
        self.activity.success("refresh_token", user_id=claims.sub, client=client)
        return access_token, self.tokens.access_ttl

    async def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        confirm_new_password: str,
        *,
        client: Optional[ClientInfo] = None,
    ) -> None:
        try:
            if new_password != confirm_new_password:
                raise ValidationError.for_field("confirm_new_password", "Passwords do not match")
            if new_password == old_password:
                raise ValidationError.for_field(
                    "new_password", "New password cannot be the same as old password"
                )
            validate_password(new_password, "new_password")
            self.identity.require_user(user_id)
            if not await self.identity.verify_password(user_id, old_password):
                raise AuthenticationError("Invalid credentials")
            await self.identity.update_password(user_id, new_password)
        except ServiceError as exc:
            self.activity.failure("change_password", exc.message, user_id=user_id, client=client)
            raise
        except Exception:
            self.activity.failure(
                "change_password", INTERNAL_FAILURE_MESSAGE, user_id=user_id, client=client
            )
            raise

        revoked = self.sessions.revoke_all(user_id)
        self.activity.success("change_password", user_id=user_id, client=client)
        self.logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)

    async def verify_user_exists(self, user_id: str, tenant_id: str) -> UserProfile:
        user = self.identity.get_user(user_id)
        if user is None:
            raise AuthenticationError("Unauthorized")
        try:
            uuid.UUID(tenant_id)
        except ValueError:
            raise ValidationError(
                "Invalid tenant ID in token",
                detail={"errors": [{"field": "tenant_id", "message": "Invalid tenant ID in token"}]},
            )
        roles = self.identity.roles_in_tenant(user.id, tenant_id)
        return UserProfile(
            id=user.id,
            username=user.username,
            email=user.email,
            created_at=user.created_at,
            updated_at=user.updated_at,
            role=roles[0] if roles else DEFAULT_ROLE,
        )

    async def authenticate_access_token(self, token: str) -> Principal:
        claims = await self._validate_token(token)
        if claims.token_type != ACCESS_TOKEN:
            raise AuthenticationError("Unauthorized")
        return Principal(user_id=claims.sub, tenant_id=claims.tenant_id, role=claims.role)

    async def generate_invitation_code(self) -> str:
        code = self.invitations.issue()
        self.logger.info("invitation_code_generated")
        return code
