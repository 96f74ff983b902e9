"""
Interaction proof validation.

One rule set, run twice: inside the signing context before anything is
signed, and again on the server after the signature checks out. Both sides
build the validator from the same ``ProofPolicy``.
"""
import logging
import math
from dataclasses import dataclass
from enum import Enum
from statistics import pvariance
from typing import Optional, Sequence, Union, Dict, Any

from pydantic import ValidationError

from pan.core.errors import ProofRejected
from pan.models.models import Action, InteractionProof, TrajectoryPoint, INTERACTION_KINDS
from pan.utils.helpers import now_ms as _now_ms

log = logging.getLogger(__name__)

RejectReason = Enum("RejectReason", [
    "MALFORMED",
    "EXPIRED",
    "FROM_THE_FUTURE",
    "CONTEXT_MISMATCH",
    "INSUFFICIENT_TRAJECTORY",
    "VELOCITY_EXCEEDED",
    "INVALID_KIND",
    "INVALID_TIMING",
    "INVALID_POSITION",
    "INVALID_NONCE",
])

# Samples used for the derived velocity, matching what the recorder looks at.
VELOCITY_WINDOW = 5


@dataclass(frozen=True)
class ProofPolicy:
    max_age_ms: int = 5000
    clock_skew_ms: int = 2000
    min_trajectory_points: int = 3
    max_velocity: float = 10.0  # px/ms
    max_trajectory_gap_ms: int = 2000
    min_nonce_length: int = 16


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: Optional[RejectReason] = None
    detail: Optional[str] = None

    @classmethod
    def accept(cls) -> "ValidationResult":
        return cls(True)

    @classmethod
    def reject(cls, reason: RejectReason, detail: str) -> "ValidationResult":
        return cls(False, reason, detail)


def trajectory_velocity(points: Sequence[TrajectoryPoint], window: int = VELOCITY_WINDOW) -> float:
    """Path length over elapsed time across the last ``window`` samples, in px/ms."""
    recent = list(points)[-window:]
    if len(recent) < 2:
        return 0.0
    distance = 0.0
    for a, b in zip(recent, recent[1:]):
        distance += math.hypot(b.x - a.x, b.y - a.y)
    elapsed = recent[-1].timestamp_ms - recent[0].timestamp_ms
    if elapsed <= 0:
        # Movement with no elapsed time is a teleport.
        return math.inf if distance > 0 else 0.0
    return distance / elapsed


def humanness_score(points: Sequence[TrajectoryPoint]) -> int:
    """Rough 0-100 score of how human a trajectory looks. Informational only."""
    if len(points) < 3:
        return 0
    score = 0

    direction_changes = 0
    for a, b, c in zip(points, points[1:], points[2:]):
        dx1, dy1 = b.x - a.x, b.y - a.y
        dx2, dy2 = c.x - b.x, c.y - b.y
        if _sign(dx1) != _sign(dx2) or _sign(dy1) != _sign(dy2):
            direction_changes += 1
    if direction_changes > 0:
        score += 25
    if direction_changes > 2:
        score += 25

    speeds = []
    for a, b in zip(points, points[1:]):
        dt = b.timestamp_ms - a.timestamp_ms
        if dt > 0:
            speeds.append(math.hypot(b.x - a.x, b.y - a.y) / dt)
    if len(speeds) > 1 and pvariance(speeds) > 0.1:
        score += 25

    if len(points) >= 5:
        score += 25
    return min(score, 100)


def _sign(v: float) -> int:
    return (v > 0) - (v < 0)


class ProofValidator:
    def __init__(self, policy: Optional[ProofPolicy] = None, clock=_now_ms):
        self.policy = policy or ProofPolicy()
        self.clock = clock

    def validate(
        self,
        proof: Union[InteractionProof, Dict[str, Any]],
        action: Union[Action, Dict[str, Any]],
        now_ms: Optional[int] = None,
    ) -> ValidationResult:
        try:
            if not isinstance(proof, InteractionProof):
                proof = InteractionProof.model_validate(proof)
            if not isinstance(action, Action):
                action = Action.model_validate(action)
        except ValidationError as e:
            return ValidationResult.reject(RejectReason.MALFORMED, f"{e.error_count()} invalid field(s)")

        p = self.policy
        now = self.clock() if now_ms is None else now_ms

        age = now - proof.fresh_at_ms
        if age > p.max_age_ms:
            return ValidationResult.reject(RejectReason.EXPIRED, "Interaction proof expired")
        if age < -p.clock_skew_ms:
            return ValidationResult.reject(RejectReason.FROM_THE_FUTURE, "Interaction proof from the future")

        if proof.action_context != action.display_name:
            return ValidationResult.reject(
                RejectReason.CONTEXT_MISMATCH,
                f'Action context mismatch: proof="{proof.action_context}" action="{action.display_name}"',
            )

        if len(proof.trajectory) < p.min_trajectory_points:
            return ValidationResult.reject(RejectReason.INSUFFICIENT_TRAJECTORY, "Insufficient trajectory data")

        # The reported figure alone is attacker-controlled; check the samples too.
        velocity = max(proof.velocity, trajectory_velocity(proof.trajectory))
        if velocity > p.max_velocity:
            return ValidationResult.reject(RejectReason.VELOCITY_EXCEEDED, "Unrealistic pointer velocity detected")

        if proof.kind not in INTERACTION_KINDS:
            return ValidationResult.reject(RejectReason.INVALID_KIND, "Invalid interaction type")

        for a, b in zip(proof.trajectory, proof.trajectory[1:]):
            gap = b.timestamp_ms - a.timestamp_ms
            if gap < 0 or gap > p.max_trajectory_gap_ms:
                return ValidationResult.reject(RejectReason.INVALID_TIMING, "Invalid trajectory timing")

        if proof.position.x < 0 or proof.position.y < 0:
            return ValidationResult.reject(RejectReason.INVALID_POSITION, "Invalid position coordinates")

        if len(proof.nonce) < p.min_nonce_length:
            return ValidationResult.reject(RejectReason.INVALID_NONCE, "Missing or invalid nonce")

        return ValidationResult.accept()

    def ensure_valid(self, proof, action, now_ms: Optional[int] = None) -> None:
        result = self.validate(proof, action, now_ms)
        if not result.ok:
            log.warning("Proof rejected - reason: %s, detail: %s", result.reason.name, result.detail)
            raise ProofRejected(result.reason.name, result.detail)
