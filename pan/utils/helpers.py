# pan/utils/helpers.py
import base64
import binascii
import hashlib
import json
import secrets
import time
from typing import Dict, Any

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

P256_COORD_LEN = 32

# -------- Base64 utilities --------
def b64u(data: bytes) -> str:
    """Base64url encode bytes to string."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

def b64(data: bytes) -> str:
    """Standard base64 (the alphabet browsers produce with btoa)."""
    return base64.b64encode(data).decode()

def b64_dec(s: str) -> bytes:
    """Strict standard base64 decode; raises ValueError on bad input."""
    try:
        return base64.b64decode(s.encode(), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64: {e}")

# -------- ECDSA signature formats --------
def der_to_raw(der: bytes) -> bytes:
    """DER ECDSA signature -> fixed-width r||s (WebCrypto/JWS format)."""
    r, s = decode_dss_signature(der)
    return r.to_bytes(P256_COORD_LEN, "big") + s.to_bytes(P256_COORD_LEN, "big")

# -------- JWK utilities --------
def ec_public_key_to_jwk(public_key: ec.EllipticCurvePublicKey) -> Dict[str, Any]:
    """Export a P-256 public key the way WebCrypto exports it as JWK."""
    nums = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "x": b64u(nums.x.to_bytes(P256_COORD_LEN, "big")),
        "y": b64u(nums.y.to_bytes(P256_COORD_LEN, "big")),
        "ext": True,
        "key_ops": ["verify"],
    }

def ec_p256_thumbprint(jwk: Dict[str, Any]) -> str:
    """Generate EC P-256 JWK thumbprint (RFC 7638)."""
    ordered = {"crv": jwk["crv"], "kty": jwk["kty"], "x": jwk["x"], "y": jwk["y"]}
    return b64u(hashlib.sha256(json.dumps(ordered, separators=(",", ":"), ensure_ascii=False).encode()).digest())

def is_public_p256_jwk(jwk: Any) -> bool:
    """Shape check only: EC P-256, both coordinates present, no private part."""
    if not isinstance(jwk, dict):
        return False
    if jwk.get("kty") != "EC" or jwk.get("crv") != "P-256":
        return False
    if "d" in jwk:
        return False
    return isinstance(jwk.get("x"), str) and isinstance(jwk.get("y"), str)

# -------- Time utilities --------
def now_ms() -> int:
    """Wall-clock milliseconds, the unit every proof timestamp uses."""
    return int(time.time() * 1000)

# -------- Token utilities --------
def new_token(nbytes: int = 18) -> str:
    return secrets.token_urlsafe(nbytes)

def short_id(value: str) -> str:
    """Log-safe prefix of an identifier."""
    return f"{value[:8]}..." if value else "<none>"
