from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from src.domain.clock import hours_until
from src.domain.exceptions import ConflictError


class RefundPolicy(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NO_REFUND = "no-refund"


@dataclass(frozen=True)
class RefundStep:
    min_hours: float
    percent: int


@dataclass(frozen=True)
class RefundLadder:
    """
    Partial-refund percentages keyed by hours left before the event.
    A step applies when the time left is strictly greater than its
    threshold; the last step covers everything below.
    """

    steps: tuple[RefundStep, ...]

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError("Refund ladder needs at least one step")
        for upper, lower in zip(self.steps, self.steps[1:]):
            if lower.min_hours >= upper.min_hours:
                raise ValueError("Refund ladder thresholds must be descending")
            if lower.percent > upper.percent:
                raise ValueError("Refund ladder percentages must not increase")
        for step in self.steps:
            if not 0 <= step.percent <= 100:
                raise ValueError("Refund percentages must be between 0 and 100")

    @classmethod
    def parse(cls, raw: str) -> "RefundLadder":
        """Parses ``"168:90,72:70,24:50,0:30"`` (hours:percent pairs)."""
        steps = []
        for chunk in raw.split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            hours, _, percent = chunk.partition(":")
            steps.append(RefundStep(min_hours=float(hours), percent=int(percent)))
        return cls(steps=tuple(steps))

    def percent_for(self, hours_left: float) -> int:
        for step in self.steps:
            if hours_left > step.min_hours:
                return step.percent
        return self.steps[-1].percent


DEFAULT_REFUND_LADDER = RefundLadder.parse("168:90,72:70,24:50,0:30")


def ensure_cancellable(
    starts_at: datetime,
    now: datetime,
    cutoff_hours: float,
) -> float:
    """Returns the hours left before the event, or raises if too late."""
    hours_left = hours_until(starts_at, now)
    if hours_left <= 0:
        raise ConflictError("Cannot cancel booking for past events")
    if hours_left <= cutoff_hours:
        raise ConflictError(
            f"Cannot cancel booking within {cutoff_hours:g} hours of event"
        )
    return hours_left


def refund_percent(
    policy: RefundPolicy,
    hours_left: float,
    ladder: RefundLadder = DEFAULT_REFUND_LADDER,
) -> int:
    if policy is RefundPolicy.NO_REFUND:
        return 0
    if policy is RefundPolicy.FULL:
        return 100
    return ladder.percent_for(hours_left)


def calculate_refund_amount(
    amount_paid: int,
    policy: RefundPolicy,
    hours_left: float,
    ladder: RefundLadder = DEFAULT_REFUND_LADDER,
) -> int:
    if amount_paid <= 0:
        return 0
    return amount_paid * refund_percent(policy, hours_left, ladder) // 100
