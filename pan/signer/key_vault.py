"""
KeyVault - the signing identity of one signing context.

At most one identity exists per vault. The private half is a non-extractable
handle from the key provider; the record is kept in origin-scoped storage so a
different origin sharing the same storage never sees it.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple

from pan.core.errors import NotInitialized, KeyGenerationError, KeyExportError
from pan.signer.provider import SoftwareKeyProvider, KeyHandle
from pan.utils.helpers import now_ms

log = logging.getLogger(__name__)

RECORD_ID = "session-key"


@dataclass(frozen=True)
class SigningIdentity:
    private_key: KeyHandle
    public_key: KeyHandle
    public_jwk: Dict[str, Any]
    created_at: int


class KeyStorage:
    """Async record store partitioned by origin."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], Any] = {}
        self._lock = asyncio.Lock()

    async def put(self, origin: str, record_id: str, value: Any):
        async with self._lock:
            self._records[(origin, record_id)] = value

    async def get(self, origin: str, record_id: str) -> Optional[Any]:
        async with self._lock:
            return self._records.get((origin, record_id))

    async def delete(self, origin: str, record_id: str) -> bool:
        async with self._lock:
            return self._records.pop((origin, record_id), None) is not None


class KeyVault:
    def __init__(self, provider: SoftwareKeyProvider, storage: KeyStorage, origin: str):
        self.provider = provider
        self.storage = storage
        self.origin = origin

    async def _identity(self) -> SigningIdentity:
        identity = await self.storage.get(self.origin, RECORD_ID)
        if identity is None:
            raise NotInitialized()
        return identity

    async def has_identity(self) -> bool:
        return await self.storage.get(self.origin, RECORD_ID) is not None

    async def initialize(self) -> Dict[str, Any]:
        """Replace any existing identity with a fresh P-256 key pair; return the public JWK."""
        await self.destroy()
        try:
            private, public = self.provider.generate_key_pair(extractable=False)
        except KeyExportError as e:
            log.error("Key generation refused by platform: %s", e)
            raise KeyGenerationError(str(e)) from e
        public_jwk = self.provider.export_jwk(public)
        await self.storage.put(self.origin, RECORD_ID, SigningIdentity(private, public, public_jwk, now_ms()))
        log.info("Signing identity created for %s", self.origin)
        return dict(public_jwk)

    async def current_public_key(self) -> Dict[str, Any]:
        identity = await self._identity()
        return dict(identity.public_jwk)

    async def sign(self, data: bytes) -> bytes:
        identity = await self._identity()
        return self.provider.sign(identity.private_key, data)

    async def destroy(self) -> None:
        identity = await self.storage.get(self.origin, RECORD_ID)
        if identity is None:
            return
        await self.storage.delete(self.origin, RECORD_ID)
        self.provider.discard(identity.private_key)
        log.info("Signing identity destroyed for %s", self.origin)
