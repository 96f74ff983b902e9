"""
Nonce Service - issues single-use nonces and consumes them atomically
"""
import logging
import secrets
from typing import Tuple

from pan.db.store import PanStore
from pan.utils.helpers import now_ms, short_id

log = logging.getLogger(__name__)

NONCE_TTL = 5 * 60  # 5 minutes
NONCE_BYTES = 32


class NonceAuthority:
    def __init__(self, store: PanStore, ttl: int = NONCE_TTL, nbytes: int = NONCE_BYTES, clock=now_ms):
        self.store = store
        self.ttl_ms = ttl * 1000
        self.nbytes = nbytes
        self.clock = clock

    async def issue(self) -> Tuple[str, int]:
        """Return ``(nonce, expires_at_ms)`` for a fresh registered nonce."""
        nonce = secrets.token_hex(self.nbytes)
        issued_at = self.clock()
        expires_at = issued_at + self.ttl_ms
        await self.store.add_nonce(nonce, expires_at, issued_at)
        log.debug("Issued nonce %s", short_id(nonce))
        return nonce, expires_at

    async def consume(self, nonce) -> bool:
        """True only for the one caller that removes a live nonce."""
        if not isinstance(nonce, str) or not nonce:
            return False
        consumed = await self.store.consume_nonce(nonce, self.clock())
        if not consumed:
            log.warning("Nonce invalid, expired or reused: %s", short_id(nonce))
        return consumed
