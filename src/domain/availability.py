from dataclasses import dataclass
from typing import Mapping, Sequence

from src.domain.exceptions import InsufficientInventoryError
from src.domain.validation import TicketRequest

# Events configured without tiers sell a single tier under this name.
LEGACY_TIER_NAME = "General"


@dataclass(frozen=True)
class TierInventory:
    """Read-only view of one tier's stock at the time it was loaded."""

    name: str
    price: int
    capacity: int
    remaining: int
    legacy: bool = False


def check_availability(
    event_title: str,
    tiers: Mapping[str, TierInventory],
    requests: Sequence[TicketRequest],
) -> None:
    """
    Compares every request against the loaded tiers and reports all
    shortfalls at once. Nothing is reserved here; the conditional
    decrement at commit time is what actually guards the stock.
    """
    violations: list[str] = []

    for request in requests:
        tier = tiers.get(request.tier)
        if tier is None:
            violations.append(
                f'Ticket type "{request.tier}" not found in {event_title}'
            )
            continue

        if tier.remaining < request.quantity:
            if tier.legacy:
                violations.append(
                    f"Only {tier.remaining} ticket(s) available for {event_title}"
                )
            else:
                violations.append(
                    f"Only {tier.remaining} {tier.name} ticket(s) available "
                    f"for {event_title}"
                )

    if violations:
        raise InsufficientInventoryError(violations)
