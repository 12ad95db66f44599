"""Shape checks applied to a booking request before any state is touched."""

from dataclasses import dataclass
from typing import Sequence

from src.domain.exceptions import ValidationError


@dataclass(frozen=True)
class TicketRequest:
    """One (tier, quantity) entry of a booking request."""

    tier: str
    quantity: int


def validate_booking_request(
    requests: Sequence[TicketRequest],
    max_per_tier: int,
    max_per_order: int,
) -> list[TicketRequest]:
    if not requests:
        raise ValidationError("Please provide at least one ticket booking")

    seen: set[str] = set()
    cleaned: list[TicketRequest] = []
    total_quantity = 0

    for request in requests:
        tier = (request.tier or "").strip()
        if not tier:
            raise ValidationError("Each booking must have a valid tier")

        if tier in seen:
            raise ValidationError(f"Tier {tier} appears more than once")
        seen.add(tier)

        quantity = request.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"Invalid quantity for {tier} tickets")

        if quantity > max_per_tier:
            raise ValidationError(
                f"Cannot book more than {max_per_tier} {tier} tickets at once"
            )

        total_quantity += quantity
        cleaned.append(TicketRequest(tier=tier, quantity=quantity))

    if total_quantity > max_per_order:
        raise ValidationError(
            f"Cannot book more than {max_per_order} tickets total per order"
        )

    return cleaned
