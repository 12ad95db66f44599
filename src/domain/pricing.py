from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from typing import Mapping, Sequence

from src.domain.availability import TierInventory
from src.domain.exceptions import ValidationError
from src.domain.validation import TicketRequest


@dataclass(frozen=True)
class PricedLine:
    tier: str
    quantity: int
    unit_price: int
    subtotal: int

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "subtotal": self.subtotal,
        }


@dataclass(frozen=True)
class BookingTotals:
    """All amounts are integer minor units of the event currency."""

    lines: tuple[PricedLine, ...]
    total_quantity: int
    subtotal: int
    service_fee: int
    total_amount: int

    @property
    def is_free(self) -> bool:
        return self.subtotal == 0


def platform_fee(subtotal: int, fee_percent: Decimal) -> int:
    if subtotal <= 0:
        return 0
    fee = Decimal(subtotal) * Decimal(fee_percent) / Decimal(100)
    # Rounded up so the smallest paid booking still carries a fee.
    return int(fee.quantize(Decimal(1), rounding=ROUND_UP))


def calculate_totals(
    requests: Sequence[TicketRequest],
    tiers: Mapping[str, TierInventory],
    fee_percent: Decimal,
) -> BookingTotals:
    lines: list[PricedLine] = []
    total_quantity = 0
    subtotal = 0

    for request in requests:
        tier = tiers.get(request.tier)
        if tier is None:
            raise ValidationError(f'Ticket type "{request.tier}" not found')
        if tier.price < 0:
            raise ValidationError(f"Invalid price for {request.tier} tickets")

        line_total = tier.price * request.quantity
        lines.append(
            PricedLine(
                tier=tier.name,
                quantity=request.quantity,
                unit_price=tier.price,
                subtotal=line_total,
            )
        )
        total_quantity += request.quantity
        subtotal += line_total

    fee = platform_fee(subtotal, fee_percent)
    return BookingTotals(
        lines=tuple(lines),
        total_quantity=total_quantity,
        subtotal=subtotal,
        service_fee=fee,
        total_amount=subtotal + fee,
    )


def requests_from_lines(lines: Sequence[Mapping]) -> list[TicketRequest]:
    """Rebuilds the (tier, quantity) entries stored on a booking."""
    return [
        TicketRequest(tier=line["tier"], quantity=int(line["quantity"]))
        for line in lines
    ]
