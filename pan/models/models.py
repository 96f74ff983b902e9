"""
Domain Models and Data Structures

Wire types are closed pydantic models: unknown fields are rejected so that
what the server re-canonicalizes is exactly what the signer saw. Python
attributes are snake_case, the JSON form is camelCase.
"""
from typing import Dict, Any, Optional, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

INTERACTION_KINDS = ("click", "submit", "keypress")


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Action(WireModel):
    """The operation a user intends to authorize."""
    kind: str
    context: str
    display_name: str
    payload: Any = None


class TrajectoryPoint(WireModel):
    x: float
    y: float
    timestamp_ms: float


class Position(WireModel):
    x: float = 0
    y: float = 0


class InteractionRecord(WireModel):
    """Snapshot taken synchronously when a real click/submit/Enter happens."""
    kind: str
    occurred_at_ms: int
    fresh_at_ms: int
    target_fingerprint: str
    action_context: str
    position: Position = Field(default_factory=Position)
    trajectory: List[TrajectoryPoint] = Field(default_factory=list)
    velocity: float = 0
    acceleration: float = 0


class InteractionProof(InteractionRecord):
    """An interaction record bound to an action hash and a server nonce."""
    action_hash: str
    nonce: str


# ---------------- Signing channel envelopes ----------------

class SigningRequest(WireModel):
    kind: str
    correlation_id: str = Field(min_length=1)
    action: Optional[Action] = None
    proof: Optional[InteractionProof] = None
    nonce: Optional[str] = None


class SigningResponse(WireModel):
    correlation_id: str
    ok: bool
    public_key: Optional[Dict[str, Any]] = None
    signature: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None
    reason: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------- Server-side records ----------------

class Session(WireModel):
    model_config = ConfigDict(frozen=False)

    session_id: str
    user_id: str
    public_key: Dict[str, Any]
    created_at: int
    last_access_at: int
    expires_at: int
    client_meta: Dict[str, Any] = Field(default_factory=dict)


class LoginRequest(WireModel):
    username: str
    password: str
    mfa_code: Optional[str] = None
    public_key: Dict[str, Any]


class NonceResponse(WireModel):
    nonce: str
    expires_at: int
