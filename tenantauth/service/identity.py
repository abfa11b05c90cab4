from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from tenantauth.logging import get_logger
from tenantauth.service.errors import ConflictError, NotFoundError
from tenantauth.service.passwords import PasswordService
from tenantauth.service.workers import CryptoExecutor
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import TenantMembership, User
from tenantauth.storage.ttl_cache import TTLCache

logger = get_logger(__name__)

DEFAULT_ROLE = "user"

OUTCOME_CREATED = "created"
OUTCOME_RESTORED = "restored"
OUTCOME_LINKED = "linked"
OUTCOME_SIGNIN = "signin"


class IdentityStore(Protocol):
    def create_user(
        self, username: str, email: str, password_hash: str, password_algo: str
    ) -> User: ...

    def get_user(self, user_id: str, *, include_deleted: bool = False) -> Optional[User]: ...

    def find_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]: ...

    def find_user_by_username(
        self, username: str, *, include_deleted: bool = False
    ) -> Optional[User]: ...

    def update_user(
        self, user_id: str, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...

    def soft_delete_user(self, user_id: str) -> bool: ...

    def restore_user(
        self,
        user_id: str,
        *,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
    ) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class MembershipStore(Protocol):
    def add_membership(self, user_id: str, tenant_id: str, role: str) -> TenantMembership: ...

    def list_roles_in_tenant(self, user_id: str, tenant_id: str) -> List[str]: ...

    def list_memberships(self, user_id: str) -> List[TenantMembership]: ...


class AccountLinkConflict(ConflictError):
    """An existing account's password did not match during registration."""

    def __init__(self, user_id: str) -> None:
        super().__init__("Invalid credentials for account linking")
        self.user_id = user_id


@dataclass
class RegistrationResult:
    user: User
    role: str
    outcome: str


class IdentityResolver:
    """Users, tenant memberships and the registration linking state machine.

    Per-tenant role lookups and cross-tenant membership lists read through the
    TTL cache; a stale hit is tolerated and adding a membership drops both
    keys for the user.
    """

    def __init__(
        self,
        store: IdentityStore,
        memberships: MembershipStore,
        passwords: PasswordService,
        executor: CryptoExecutor,
        *,
        cache: Optional[TTLCache] = None,
        roles_ttl_seconds: int = 3600,
        memberships_ttl_seconds: int = 300,
    ) -> None:
        self.store = store
        self.memberships = memberships
        self.passwords = passwords
        self.executor = executor
        self.cache = cache
        self.roles_ttl_seconds = roles_ttl_seconds
        self.memberships_ttl_seconds = memberships_ttl_seconds

    # identities

    async def create_user(self, username: str, email: str, password: str) -> User:
        password_hash, algo = await self.executor.run(self.passwords.hash, password)
        try:
            user = self.store.create_user(username, email, password_hash, algo)
        except ConstraintViolation as exc:
            logger.warning("user_create_conflict", detail=exc.detail)
            raise ConflictError("Username or email already exists") from exc
        logger.info("user_created", user_id=user.id)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def find_user_by_email(self, email: str, *, include_deleted: bool = False) -> Optional[User]:
        return self.store.find_user_by_email(email, include_deleted=include_deleted)

    def find_user_by_username(
        self, username: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        return self.store.find_user_by_username(username, include_deleted=include_deleted)

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        try:
            user = self.store.update_user(user_id, username=username, email=email)
        except ConstraintViolation as exc:
            logger.warning("user_update_conflict", user_id=user_id, detail=exc.detail)
            raise ConflictError("Username or email already exists") from exc
        if user is None:
            raise NotFoundError("User not found")
        return user

    def soft_delete_user(self, user_id: str) -> None:
        if not self.store.soft_delete_user(user_id):
            raise NotFoundError("User not found")
        logger.info("user_soft_deleted", user_id=user_id)

    async def restore_user(
        self, user_id: str, *, username: str, email: str, password: str
    ) -> User:
        password_hash, algo = await self.executor.run(self.passwords.hash, password)
        try:
            user = self.store.restore_user(
                user_id,
                username=username,
                email=email,
                password_hash=password_hash,
                password_algo=algo,
            )
        except ConstraintViolation as exc:
            logger.warning("user_restore_conflict", user_id=user_id, detail=exc.detail)
            raise ConflictError("Username or email already exists") from exc
        if user is None:
            raise NotFoundError("User not found")
        logger.info("user_restored", user_id=user_id)
        return user

    async def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        return await self.executor.run(self.passwords.verify, record, password)

    async def update_password(self, user_id: str, password: str) -> None:
        password_hash, algo = await self.executor.run(self.passwords.hash, password)
        try:
            self.store.save_password(user_id, password_hash, algo)
        except ConstraintViolation as exc:
            raise NotFoundError("User not found") from exc

    # memberships

    @staticmethod
    def _roles_key(user_id: str, tenant_id: str) -> str:
        return f"user_tenant:{user_id}:{tenant_id}"

    @staticmethod
    def _memberships_key(user_id: str) -> str:
        return f"user_all_tenants:{user_id}"

    def roles_in_tenant(self, user_id: str, tenant_id: str) -> List[str]:
        """Roles held in ``tenant_id`` in grant order; empty means no membership."""
        key = self._roles_key(user_id, tenant_id)
        if self.cache is not None:
            cached = self.cache.get(key)
            if isinstance(cached, list):
                return [str(role) for role in cached]
        roles: List[str] = []
        for role in self.memberships.list_roles_in_tenant(user_id, tenant_id):
            if role not in roles:
                roles.append(role)
        # an empty answer is not cached so a new membership shows up at once
        if roles and self.cache is not None:
            self.cache.set(key, roles, self.roles_ttl_seconds)
        return roles

    def all_memberships(self, user_id: str) -> List[Tuple[str, str]]:
        key = self._memberships_key(user_id)
        if self.cache is not None:
            cached = self.cache.get(key)
            if isinstance(cached, list):
                return [(str(item[0]), str(item[1])) for item in cached]
        pairs = [(m.tenant_id, m.role) for m in self.memberships.list_memberships(user_id)]
        if pairs and self.cache is not None:
            self.cache.set(key, [list(pair) for pair in pairs], self.memberships_ttl_seconds)
        return pairs

    def add_membership(self, user_id: str, tenant_id: str, role: str) -> TenantMembership:
        try:
            membership = self.memberships.add_membership(user_id, tenant_id, role)
        except ConstraintViolation as exc:
            logger.warning(
                "membership_conflict",
                user_id=user_id,
                tenant_id=tenant_id,
                role=role,
                detail=exc.detail,
            )
            raise ConflictError("User already assigned to this tenant") from exc
        if self.cache is not None:
            self.cache.delete(self._roles_key(user_id, tenant_id))
            self.cache.delete(self._memberships_key(user_id))
        logger.info("membership_added", user_id=user_id, tenant_id=tenant_id, role=role)
        return membership

    # registration

    async def resolve_registration(
        self,
        *,
        tenant_id: str,
        username: str,
        email: str,
        password: str,
        role: str = DEFAULT_ROLE,
    ) -> RegistrationResult:
        """Create, restore or link an identity for a registration attempt.

        ``email`` must already be normalized. Email is the only linking
        anchor: a username match carrying a different email is a Conflict.
        Restoring a soft-deleted identity takes the new password without
        checking the old one; linking an active identity requires the
        existing password.
        """
        existing = self.find_user_by_email(email, include_deleted=True)
        conflict_reason = "Email already exists"
        if existing is None:
            existing = self.find_user_by_username(username)
            conflict_reason = "Username already exists"

        if existing is None:
            user = await self.create_user(username, email, password)
            self.add_membership(user.id, tenant_id, role)
            return RegistrationResult(user=user, role=role, outcome=OUTCOME_CREATED)

        if existing.email != email:
            logger.warning(
                "registration_identity_conflict",
                user_id=existing.id,
                reason=conflict_reason,
            )
            raise ConflictError(conflict_reason)

        if existing.is_deleted:
            logger.info("restoring_soft_deleted_user", user_id=existing.id)
            user = await self.restore_user(
                existing.id, username=username, email=email, password=password
            )
            outcome = OUTCOME_RESTORED
        else:
            if not await self.verify_password(existing.id, password):
                raise AccountLinkConflict(existing.id)
            user = existing
            outcome = OUTCOME_LINKED

        if role in self.roles_in_tenant(user.id, tenant_id):
            if outcome == OUTCOME_LINKED:
                outcome = OUTCOME_SIGNIN
            return RegistrationResult(user=user, role=role, outcome=outcome)

        other_tenants = {t for t, _ in self.all_memberships(user.id) if t != tenant_id}
        if other_tenants:
            logger.info(
                "registration_cross_tenant_link",
                user_id=user.id,
                tenant_id=tenant_id,
                role=role,
                other_tenant_count=len(other_tenants),
            )
        self.add_membership(user.id, tenant_id, role)
        return RegistrationResult(user=user, role=role, outcome=outcome)
