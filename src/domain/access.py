from dataclasses import dataclass
from enum import Enum

from src.domain.exceptions import AuthorizationError


class Role(str, Enum):
    ATTENDEE = "attendee"
    ORGANIZER = "organizer"
    SUPERADMIN = "superadmin"


@dataclass(frozen=True)
class Caller:
    """Identity handed over by the authentication layer."""

    user_id: str
    role: Role = Role.ATTENDEE
    email: str | None = None

    @property
    def is_superadmin(self) -> bool:
        return self.role is Role.SUPERADMIN


def ensure_buyer_or_admin(caller: Caller, buyer_id: str, action: str) -> None:
    if caller.user_id != buyer_id and not caller.is_superadmin:
        raise AuthorizationError(f"Not authorized to {action} this booking")


def ensure_organizer_or_admin(caller: Caller, organizer_id: str, action: str) -> None:
    if caller.user_id != organizer_id and not caller.is_superadmin:
        raise AuthorizationError(f"Not authorized to {action}")
