"""
Software crypto platform for the signing context.

Private keys never leave this module. Callers get an opaque ``KeyHandle``;
the only operations a handle admits are signing, exporting the public half,
and discarding the key. A non-extractable private handle cannot be exported
through any method here.
"""
import logging
import secrets
from dataclasses import dataclass
from typing import Dict, Any, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from pan.core.errors import KeyExportError
from pan.utils.helpers import der_to_raw, ec_public_key_to_jwk

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyHandle:
    key_id: str
    key_type: str  # "private" | "public"
    extractable: bool
    usages: Tuple[str, ...]


class SoftwareKeyProvider:
    """ECDSA P-256 keys held in process memory behind handles."""

    def __init__(self, supports_non_extractable: bool = True):
        self.supports_non_extractable = supports_non_extractable
        self.__keys: Dict[str, Any] = {}

    def generate_key_pair(self, extractable: bool = False) -> Tuple[KeyHandle, KeyHandle]:
        if not extractable and not self.supports_non_extractable:
            raise KeyExportError("Platform cannot create non-extractable keys")
        private_key = ec.generate_private_key(ec.SECP256R1())
        key_id = secrets.token_hex(8)
        self.__keys[key_id] = private_key
        private = KeyHandle(key_id, "private", extractable, ("sign",))
        public = KeyHandle(key_id, "public", True, ("verify",))
        log.debug("Generated P-256 key pair %s (extractable=%s)", key_id, extractable)
        return private, public

    def _key(self, handle: KeyHandle):
        key = self.__keys.get(handle.key_id)
        if key is None:
            raise KeyError(f"unknown or discarded key: {handle.key_id}")
        return key

    def export_jwk(self, handle: KeyHandle) -> Dict[str, Any]:
        if handle.key_type == "private":
            # Private material is never exported, extractable or not.
            raise KeyExportError()
        return ec_public_key_to_jwk(self._key(handle).public_key())

    def sign(self, handle: KeyHandle, data: bytes) -> bytes:
        """ECDSA/SHA-256 over ``data``; returns raw r||s (64 bytes)."""
        if handle.key_type != "private" or "sign" not in handle.usages:
            raise KeyExportError("Handle cannot be used for signing")
        der = self._key(handle).sign(data, ec.ECDSA(hashes.SHA256()))
        return der_to_raw(der)

    def discard(self, handle: KeyHandle) -> None:
        self.__keys.pop(handle.key_id, None)

    def holds(self, handle: KeyHandle) -> bool:
        return handle.key_id in self.__keys
