"""
Interaction Recorder - captures pointer motion and real user gestures.

The host UI feeds events in as they happen, before its own handlers run.
Each click, form submit or Enter keypress becomes an ``InteractionRecord``
in a small pool; a signed action later claims the newest record whose label
matches the action's display name, and that record is gone afterwards.
"""
import hashlib
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from pan.models.models import Action, InteractionProof, InteractionRecord, Position, TrajectoryPoint
from pan.services.proof_validator import ProofPolicy, trajectory_velocity, VELOCITY_WINDOW
from pan.utils.canonical import action_hash
from pan.utils.helpers import now_ms

log = logging.getLogger(__name__)

MAX_TRAJECTORY_POINTS = 100
MAX_INTERACTIONS = 20
FINGERPRINT_TEXT_LEN = 50


@dataclass(eq=False)
class ElementInfo:
    """The parts of a DOM element the recorder looks at."""
    tag: str
    id: str = ""
    class_name: str = ""
    attributes: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    parent: Optional["ElementInfo"] = field(default=None, repr=False)
    children: List["ElementInfo"] = field(default_factory=list, repr=False)

    def __post_init__(self):
        self.tag = self.tag.lower()
        for child in self.children:
            child.parent = self

    def append(self, child: "ElementInfo") -> "ElementInfo":
        child.parent = self
        self.children.append(child)
        return child

    def get_attribute(self, name: str) -> Optional[str]:
        return self.attributes.get(name)

    def text_content(self) -> str:
        return self.text + "".join(c.text_content() for c in self.children)

    def ancestors(self) -> Iterator["ElementInfo"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def descendants(self) -> Iterator["ElementInfo"]:
        for child in self.children:
            yield child
            yield from child.descendants()

    def is_button(self) -> bool:
        return self.tag == "button" or self.get_attribute("role") == "button"

    def is_submit_control(self) -> bool:
        return self.tag in ("button", "input") and self.get_attribute("type") == "submit"


def element_fingerprint(element: ElementInfo) -> str:
    """Stable, non-reversible id for a UI element (not a security primitive)."""
    descriptor = "|".join((
        element.tag.upper(),
        element.id,
        element.class_name,
        element.get_attribute("data-action") or "",
        element.text_content()[:FINGERPRINT_TEXT_LEN],
    ))
    return hashlib.sha256(descriptor.encode("utf-8")).hexdigest()[:16]


def action_label(element: ElementInfo) -> str:
    """The label a user could see on the element they activated."""
    explicit = element.get_attribute("data-action")
    if explicit:
        return explicit
    if element.is_button():
        return element.text_content().strip() or "Unknown Button"
    if element.tag == "a":
        return element.text_content().strip() or "Unknown Link"
    if element.tag == "input" and element.get_attribute("type") == "submit":
        return element.get_attribute("value") or "Submit"
    for ancestor in element.ancestors():
        if ancestor.is_button():
            return ancestor.text_content().strip() or "Unknown Button"
    return "Unknown Action"


def form_label(form: ElementInfo) -> str:
    submit = next((d for d in form.descendants() if d.is_submit_control()), None)
    if submit is not None:
        return submit.text_content().strip() or submit.get_attribute("value") or "Submit Form"
    return form.get_attribute("data-action") or "Submit Form"


class InteractionRecorder:
    def __init__(
        self,
        policy: Optional[ProofPolicy] = None,
        max_trajectory_points: int = MAX_TRAJECTORY_POINTS,
        max_interactions: int = MAX_INTERACTIONS,
        clock=now_ms,
    ):
        self.policy = policy or ProofPolicy()
        self.clock = clock
        self._trajectory: deque = deque(maxlen=max_trajectory_points)
        self._pool: deque = deque(maxlen=max_interactions)

    def __len__(self):
        return len(self._pool)

    def reset(self):
        self._trajectory.clear()
        self._pool.clear()

    # ---------------- Event handlers ----------------

    def on_pointer_move(self, x: float, y: float, timestamp_ms: Optional[float] = None):
        ts = self.clock() if timestamp_ms is None else timestamp_ms
        self._trajectory.append(TrajectoryPoint(x=x, y=y, timestamp_ms=ts))

    def on_click(self, target: ElementInfo, x: float, y: float) -> InteractionRecord:
        return self._record("click", target, action_label(target), Position(x=x, y=y))

    def on_submit(self, form: ElementInfo) -> InteractionRecord:
        return self._record("submit", form, form_label(form), Position())

    def on_keypress(self, key: str, target: ElementInfo) -> Optional[InteractionRecord]:
        if key != "Enter":
            return None
        return self._record("keypress", target, action_label(target), Position())

    # ---------------- Snapshots ----------------

    def trajectory_snapshot(self) -> List[TrajectoryPoint]:
        """Trailing run of samples with no gap wider than the policy allows."""
        points = list(self._trajectory)
        start = len(points) - 1
        while start > 0:
            gap = points[start].timestamp_ms - points[start - 1].timestamp_ms
            if gap < 0 or gap > self.policy.max_trajectory_gap_ms:
                break
            start -= 1
        return points[max(start, 0):]

    @staticmethod
    def _acceleration(points: List[TrajectoryPoint]) -> float:
        if len(points) < VELOCITY_WINDOW + 1:
            return 0.0
        current = trajectory_velocity(points)
        previous = trajectory_velocity(points[:-1])
        dt = points[-1].timestamp_ms - points[-2].timestamp_ms
        if dt <= 0 or current == float("inf") or previous == float("inf"):
            return 0.0
        return (current - previous) / dt

    def _record(self, kind: str, target: ElementInfo, label: str, position: Position) -> InteractionRecord:
        snapshot = self.trajectory_snapshot()
        ts = self.clock()
        record = InteractionRecord(
            kind=kind,
            occurred_at_ms=ts,
            fresh_at_ms=ts,
            target_fingerprint=element_fingerprint(target),
            action_context=label,
            position=position,
            trajectory=snapshot,
            velocity=trajectory_velocity(snapshot),
            acceleration=self._acceleration(snapshot),
        )
        self._pool.append(record)
        log.debug("Recorded %s on %r (%d trajectory points)", kind, label, len(snapshot))
        return record

    # ---------------- Matching ----------------

    def extract_matching(self, action) -> Optional[InteractionRecord]:
        """Claim the newest fresh record labelled with the action's display name."""
        display_name = action.display_name if isinstance(action, Action) else action.get("displayName")
        now = self.clock()
        for i in range(len(self._pool) - 1, -1, -1):
            record = self._pool[i]
            if now - record.occurred_at_ms > self.policy.max_age_ms:
                continue
            if record.action_context == display_name:
                del self._pool[i]
                return record
        return None

    def build_proof(self, action, nonce: str) -> Optional[InteractionProof]:
        record = self.extract_matching(action)
        if record is None:
            log.warning("No matching interaction for action %r", getattr(action, "display_name", action))
            return None
        fields = record.model_dump()
        fields["fresh_at_ms"] = self.clock()
        return InteractionProof(**fields, action_hash=action_hash(action), nonce=nonce)
