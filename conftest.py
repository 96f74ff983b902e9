"""
Shared fixtures for the PAN test suite
"""
import json
from dataclasses import replace
from typing import List

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from pan.core.config import load_settings
from pan.models.models import Action, InteractionProof, Position, TrajectoryPoint
from pan.utils.canonical import action_hash, build_signing_message
from pan.utils.helpers import b64, der_to_raw, ec_public_key_to_jwk

APP_ORIGIN = "http://localhost:3000"
SIGNER_ORIGIN = "http://localhost:3001"
EVIL_ORIGIN = "https://evil.example"
NONCE = "0123456789abcdef0123456789abcdef"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def human_trajectory(end_ms: int, n: int = 6, step_ms: int = 16) -> List[TrajectoryPoint]:
    """A few pointer samples at a believable pace (about 5px per 16ms)."""
    start = end_ms - (n - 1) * step_ms
    return [
        TrajectoryPoint(x=100 + 5 * i, y=200 + 3 * i + (i % 2), timestamp_ms=start + i * step_ms)
        for i in range(n)
    ]


def make_action(display_name: str = "Confirm Transfer", context: str = "/api/protected/action", payload=None) -> Action:
    return Action(kind="api_call", context=context, display_name=display_name, payload=payload)


def make_proof(now_ms: int, display_name: str = "Confirm Transfer", nonce: str = NONCE, **overrides) -> InteractionProof:
    fields = dict(
        kind="click",
        occurred_at_ms=now_ms - 50,
        fresh_at_ms=now_ms,
        target_fingerprint="3f2a9c0d11e4b7a2",
        action_context=display_name,
        position=Position(x=130, y=215),
        trajectory=human_trajectory(now_ms - 60),
        velocity=0.35,
        acceleration=0.0,
        action_hash=action_hash(make_action(display_name)),
        nonce=nonce,
    )
    fields.update(overrides)
    return InteractionProof(**fields)


class TestKey:
    """A P-256 key standing in for the signing context in server-side tests."""

    def __init__(self):
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.public_jwk = ec_public_key_to_jwk(self.private_key.public_key())

    def sign_raw(self, data: bytes) -> bytes:
        return der_to_raw(self.private_key.sign(data, ec.ECDSA(hashes.SHA256())))

    def sign_request(self, action, proof, nonce: str) -> str:
        return b64(self.sign_raw(build_signing_message(action, proof, nonce).encode("utf-8")))

    def protected_headers(self, session_id: str, action, proof) -> dict:
        return {
            "X-Session-Id": session_id,
            "X-Signature": self.sign_request(action, proof, proof.nonce),
            "X-Interaction-Proof": json.dumps(proof.to_wire()),
        }

    # keep pytest from collecting this helper as a test class
    __test__ = False


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.delenv("PAN_CONFIG", raising=False)
    return replace(load_settings(), db_path=":memory:", allowed_origins=[APP_ORIGIN], signer_allowed_origins=[APP_ORIGIN])


@pytest.fixture
def test_key():
    return TestKey()
