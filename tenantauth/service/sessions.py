from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from tenantauth.logging import get_logger
from tenantauth.service.errors import ConflictError, NotFoundError
from tenantauth.service.passwords import hash_refresh_token
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.models import Session, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        *,
        expires_at: datetime,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Session: ...

    def find_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_user_sessions(self, user_id: str) -> int: ...


@dataclass(frozen=True)
class ClientInfo:
    """Device metadata recorded on sessions and activity rows."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionService:
    """Refresh-token sessions, always read straight from the store.

    Nothing here goes through the TTL cache; a revoked session must stop
    working on the very next refresh.
    """

    def __init__(self, store: SessionStore, *, ttl_seconds: int) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    def open(
        self,
        user_id: str,
        refresh_token: str,
        *,
        session_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Session:
        client = client or ClientInfo()
        try:
            return self.store.create_session(
                user_id,
                hash_refresh_token(refresh_token),
                expires_at=utcnow() + timedelta(seconds=self.ttl_seconds),
                user_agent=client.user_agent,
                ip_address=client.ip_address,
                session_id=session_id,
            )
        except ConstraintViolation as exc:
            logger.error("session_create_conflict", user_id=user_id, detail=exc.detail)
            raise ConflictError("Session already exists") from exc

    def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        return self.store.find_session_by_refresh_hash(hash_refresh_token(refresh_token))

    def revoke(self, session_id: str) -> None:
        try:
            self.store.delete_session(session_id)
        except RecordNotFound as exc:
            raise NotFoundError(exc.message) from exc

    def revoke_all(self, user_id: str) -> int:
        removed = self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked", user_id=user_id, count=removed)
        return removed
