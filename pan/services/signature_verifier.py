"""
Signature verification for signed actions.

``verify`` is a predicate: malformed keys, malformed signatures and algorithm
mismatches all come back as False.
"""
import logging
from typing import Any, Dict

from jose import jwk as jose_jwk

from pan.utils.canonical import build_signing_message
from pan.utils.helpers import b64_dec, is_public_p256_jwk, P256_COORD_LEN

log = logging.getLogger(__name__)

ALGORITHM = "ES256"


class SignatureVerifier:
    def verify(self, public_jwk: Dict[str, Any], signature: str, action: Any, proof: Any, nonce: str) -> bool:
        if not is_public_p256_jwk(public_jwk):
            log.warning("Rejected public key: not an EC P-256 public JWK")
            return False
        try:
            raw = b64_dec(signature) if isinstance(signature, str) else bytes(signature)
        except (ValueError, TypeError):
            log.warning("Rejected signature: not valid base64")
            return False
        if len(raw) != 2 * P256_COORD_LEN:
            log.warning("Rejected signature: expected %d bytes, got %d", 2 * P256_COORD_LEN, len(raw))
            return False
        try:
            message = build_signing_message(action, proof, nonce).encode("utf-8")
            key = jose_jwk.construct(public_jwk, ALGORITHM)
            return bool(key.verify(message, raw))
        except Exception as e:
            log.warning("Signature verification error: %s", e.__class__.__name__)
            return False
