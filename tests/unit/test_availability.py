import pytest

from src.domain.availability import LEGACY_TIER_NAME, TierInventory, check_availability
from src.domain.exceptions import InsufficientInventoryError
from src.domain.validation import TicketRequest

TIERS = {
    "Regular": TierInventory(name="Regular", price=5000, capacity=100, remaining=3),
    "VIP": TierInventory(name="VIP", price=25000, capacity=1, remaining=0),
}


def test_enough_stock_passes():
    check_availability("Afrobeats Live", TIERS, [TicketRequest("Regular", 3)])


def test_every_short_tier_is_reported():
    with pytest.raises(InsufficientInventoryError) as exc_info:
        check_availability(
            "Afrobeats Live",
            TIERS,
            [
                TicketRequest("Regular", 4),
                TicketRequest("VIP", 1),
                TicketRequest("Backstage", 1),
            ],
        )

    violations = exc_info.value.violations
    assert len(violations) == 3
    assert "Only 3 Regular ticket(s) available for Afrobeats Live" in violations
    assert "Only 0 VIP ticket(s) available for Afrobeats Live" in violations
    assert 'Ticket type "Backstage" not found in Afrobeats Live' in violations


def test_legacy_single_price_event():
    legacy = {
        LEGACY_TIER_NAME: TierInventory(
            name=LEGACY_TIER_NAME,
            price=800,
            capacity=5,
            remaining=1,
            legacy=True,
        )
    }

    with pytest.raises(InsufficientInventoryError, match="Only 1 ticket\\(s\\) available"):
        check_availability("Comedy Night", legacy, [TicketRequest(LEGACY_TIER_NAME, 2)])
