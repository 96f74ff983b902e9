"""
Interaction proof validation tests
"""
import math

import pytest

from conftest import FakeClock, NONCE, make_action, make_proof
from pan.core.errors import ProofRejected
from pan.models.models import Position, TrajectoryPoint
from pan.services.proof_validator import (
    ProofPolicy, ProofValidator, RejectReason, humanness_score, trajectory_velocity,
)

NOW = 1_700_000_000_000


@pytest.fixture
def validator():
    return ProofValidator(ProofPolicy(), clock=FakeClock(NOW))


def points(*samples):
    return [TrajectoryPoint(x=x, y=y, timestamp_ms=t) for x, y, t in samples]


class TestAccept:
    """Proofs that must pass"""

    def test_valid_proof(self, validator):
        result = validator.validate(make_proof(NOW), make_action())
        assert result.ok
        assert result.reason is None

    def test_uses_injected_clock(self, validator):
        assert validator.validate(make_proof(NOW), make_action()).ok
        validator.clock.advance(5001)
        assert not validator.validate(make_proof(NOW), make_action()).ok

    def test_accepts_wire_dicts(self, validator):
        result = validator.validate(make_proof(NOW).to_wire(), make_action().to_wire())
        assert result.ok

    def test_realistic_human_motion(self, validator):
        trajectory = points((100, 100, NOW - 48), (105, 100, NOW - 32), (110, 100, NOW - 16), (115, 100, NOW))
        result = validator.validate(make_proof(NOW, trajectory=trajectory, velocity=5 / 16), make_action())
        assert result.ok


class TestFreshness:
    """Freshness window boundaries"""

    def test_exactly_max_age_is_accepted(self, validator):
        assert validator.validate(make_proof(NOW - 5000), make_action(), now_ms=NOW).ok

    def test_one_ms_older_is_rejected(self, validator):
        result = validator.validate(make_proof(NOW - 5001), make_action(), now_ms=NOW)
        assert result.reason is RejectReason.EXPIRED

    def test_within_clock_skew_is_accepted(self, validator):
        assert validator.validate(make_proof(NOW + 2000), make_action(), now_ms=NOW).ok

    def test_future_beyond_skew_is_rejected(self, validator):
        result = validator.validate(make_proof(NOW + 2001), make_action(), now_ms=NOW)
        assert result.reason is RejectReason.FROM_THE_FUTURE


class TestReject:
    """Each rule rejects on its own"""

    def test_context_mismatch(self, validator):
        proof = make_proof(NOW, display_name="Transfer Funds")
        result = validator.validate(proof, make_action("Delete Account"))
        assert result.reason is RejectReason.CONTEXT_MISMATCH

    def test_context_is_case_sensitive(self, validator):
        result = validator.validate(make_proof(NOW, display_name="confirm transfer"), make_action())
        assert result.reason is RejectReason.CONTEXT_MISMATCH

    def test_insufficient_trajectory(self, validator):
        trajectory = points((1, 1, NOW - 16), (2, 2, NOW))
        result = validator.validate(make_proof(NOW, trajectory=trajectory), make_action())
        assert result.reason is RejectReason.INSUFFICIENT_TRAJECTORY

    def test_reported_velocity_over_limit(self, validator):
        result = validator.validate(make_proof(NOW, velocity=10.5), make_action())
        assert result.reason is RejectReason.VELOCITY_EXCEEDED

    def test_teleporting_trajectory_rejected_even_if_reported_velocity_is_low(self, validator):
        trajectory = points((0, 0, NOW - 17), (1000, 0, NOW - 16), (1001, 0, NOW))
        result = validator.validate(make_proof(NOW, trajectory=trajectory, velocity=0.1), make_action())
        assert result.reason is RejectReason.VELOCITY_EXCEEDED

    def test_invalid_kind(self, validator):
        result = validator.validate(make_proof(NOW, kind="hover"), make_action())
        assert result.reason is RejectReason.INVALID_KIND

    def test_timestamps_going_backwards(self, validator):
        trajectory = points((100, 100, NOW - 32), (101, 100, NOW - 16), (102, 100, NOW - 20))
        result = validator.validate(make_proof(NOW, trajectory=trajectory), make_action())
        assert result.reason is RejectReason.INVALID_TIMING

    def test_gap_too_large(self, validator):
        trajectory = points((100, 100, NOW - 2100), (101, 100, NOW - 2090), (102, 100, NOW - 89))
        result = validator.validate(make_proof(NOW, trajectory=trajectory), make_action())
        assert result.reason is RejectReason.INVALID_TIMING

    def test_negative_position(self, validator):
        result = validator.validate(make_proof(NOW, position=Position(x=-1, y=5)), make_action())
        assert result.reason is RejectReason.INVALID_POSITION

    def test_short_nonce(self, validator):
        result = validator.validate(make_proof(NOW, nonce="short"), make_action())
        assert result.reason is RejectReason.INVALID_NONCE

    def test_malformed_proof(self, validator):
        result = validator.validate({"kind": "click"}, make_action())
        assert result.reason is RejectReason.MALFORMED

    def test_fail_fast_order(self, validator):
        # stale and mismatched: freshness is checked first
        proof = make_proof(NOW - 10_000, display_name="Transfer Funds")
        result = validator.validate(proof, make_action("Delete Account"), now_ms=NOW)
        assert result.reason is RejectReason.EXPIRED

    def test_ensure_valid_raises(self, validator):
        with pytest.raises(ProofRejected) as exc:
            validator.ensure_valid(make_proof(NOW, display_name="Transfer Funds"), make_action("Delete Account"))
        assert exc.value.reason == "CONTEXT_MISMATCH"
        assert exc.value.code == "PROOF_REJECTED"


class TestPolicy:
    """Thresholds come from the policy"""

    def test_tighter_policy(self):
        strict = ProofValidator(ProofPolicy(max_age_ms=1000), clock=FakeClock(NOW))
        assert not strict.validate(make_proof(NOW - 1500), make_action()).ok

    def test_min_nonce_length(self):
        lenient = ProofValidator(ProofPolicy(min_nonce_length=4), clock=FakeClock(NOW))
        assert lenient.validate(make_proof(NOW, nonce="abcd"), make_action()).ok
        assert len(NONCE) >= ProofPolicy().min_nonce_length


class TestTrajectoryAnalysis:
    """Derived velocity and the informational humanness score"""

    def test_velocity_over_last_five_samples(self):
        trajectory = points(
            (0, 0, 0),  # outside the window
            (1000, 0, 10),
            (1003, 4, 20),
            (1006, 8, 30),
            (1009, 12, 40),
            (1012, 16, 50),
        )
        assert trajectory_velocity(trajectory) == pytest.approx(20 / 40)

    def test_zero_elapsed_with_motion_is_infinite(self):
        assert math.isinf(trajectory_velocity(points((0, 0, 5), (10, 0, 5))))

    def test_single_point_is_still(self):
        assert trajectory_velocity(points((0, 0, 5))) == 0.0

    def test_humanness_score(self):
        straight = points(*[(10 * i, 0, 16 * i) for i in range(6)])
        zigzag = points(*[(10 * (i % 2), 0, 16 * i) for i in range(6)])
        assert humanness_score(straight[:2]) == 0
        assert humanness_score(straight) == 25
        assert humanness_score(zigzag) == 75
