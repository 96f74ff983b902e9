"""
Session Service - session lifecycle and credential checks
"""
import logging
from typing import Dict, Any, Optional, Protocol

from pan.core.errors import SessionInvalidOrExpired, MalformedEnvelope
from pan.db.store import PanStore
from pan.models.models import Session
from pan.utils.helpers import ec_p256_thumbprint, is_public_p256_jwk, new_token, now_ms, short_id

log = logging.getLogger(__name__)

SESSION_TTL = 24 * 60 * 60  # 24 hours


class CredentialVerifier(Protocol):
    async def verify(self, username: str, password: str, mfa_code: Optional[str] = None) -> Optional[str]:
        """Return a stable user id when the credentials are good, else None."""
        ...


class DemoCredentialVerifier:
    """Accepts any non-empty username/password. Demo use only."""

    async def verify(self, username: str, password: str, mfa_code: Optional[str] = None) -> Optional[str]:
        if not username or not password:
            return None
        return f"user-{username.split('@')[0]}"


class SessionService:
    def __init__(self, store: PanStore, ttl: int = SESSION_TTL, clock=now_ms):
        self.store = store
        self.ttl_ms = ttl * 1000
        self.clock = clock

    async def create(self, user_id: str, public_key: Dict[str, Any], client_meta: Optional[Dict[str, Any]] = None) -> Session:
        if not is_public_p256_jwk(public_key):
            raise MalformedEnvelope("Invalid public key")
        ts = self.clock()
        session = Session(
            session_id=new_token(24),
            user_id=user_id,
            public_key=dict(public_key),
            created_at=ts,
            last_access_at=ts,
            expires_at=ts + self.ttl_ms,
            client_meta=client_meta or {},
        )
        await self.store.put_session(session)
        log.info(
            "Session created - session_id: %s, user: %s, key: %s",
            short_id(session.session_id), user_id, short_id(ec_p256_thumbprint(session.public_key)),
        )
        return session

    async def resolve(self, session_id: Optional[str]) -> Session:
        if not session_id:
            raise SessionInvalidOrExpired()
        session = await self.store.get_session(session_id, self.clock())
        if session is None:
            raise SessionInvalidOrExpired()
        return session

    async def touch(self, session_id: str) -> None:
        await self.store.touch_session(session_id, self.clock())

    async def logout(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        deleted = await self.store.delete_session(session_id)
        if deleted:
            log.info("Session deleted - session_id: %s", short_id(session_id))
        return deleted
