"""
Booking state machine and the capability rules that guard it.

    PENDING --accept--> CONFIRMED --start--> IN_PROGRESS --complete--> COMPLETED
       |                    |                     |
       +--reject--> REJECTED|                     |
       +--cancel------------+--cancel-------------+--cancel--> CANCELLED

REJECTED, CANCELLED and COMPLETED are terminal.
"""
import enum
from dataclasses import dataclass

from .exceptions import InvalidTransition, Unauthorized


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset(
    {BookingStatus.REJECTED, BookingStatus.CANCELLED, BookingStatus.COMPLETED}
)


class BookingEvent(str, enum.Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    START = "START"
    COMPLETE = "COMPLETE"
    CANCEL = "CANCEL"


class Role(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    SERVICE_PROVIDER = "SERVICE_PROVIDER"
    ADMIN = "ADMIN"


class Party(str, enum.Enum):
    """How an actor relates to one particular booking."""

    CUSTOMER = "CUSTOMER"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"


_ANY_PARTICIPANT = frozenset({Party.CUSTOMER, Party.PROVIDER, Party.ADMIN})

# (from, event) -> (to, parties allowed to fire it)
TRANSITIONS: dict[tuple[BookingStatus, BookingEvent], tuple[BookingStatus, frozenset]] = {
    (BookingStatus.PENDING, BookingEvent.ACCEPT): (BookingStatus.CONFIRMED, frozenset({Party.PROVIDER})),
    (BookingStatus.PENDING, BookingEvent.REJECT): (BookingStatus.REJECTED, frozenset({Party.PROVIDER})),
    (BookingStatus.PENDING, BookingEvent.CANCEL): (BookingStatus.CANCELLED, _ANY_PARTICIPANT),
    (BookingStatus.CONFIRMED, BookingEvent.START): (BookingStatus.IN_PROGRESS, frozenset({Party.PROVIDER})),
    (BookingStatus.CONFIRMED, BookingEvent.CANCEL): (BookingStatus.CANCELLED, _ANY_PARTICIPANT),
    (BookingStatus.IN_PROGRESS, BookingEvent.COMPLETE): (BookingStatus.COMPLETED, frozenset({Party.PROVIDER})),
    # a job already underway is only called off by the provider or support
    (BookingStatus.IN_PROGRESS, BookingEvent.CANCEL): (
        BookingStatus.CANCELLED,
        frozenset({Party.PROVIDER, Party.ADMIN}),
    ),
}


@dataclass(frozen=True)
class Actor:
    user_id: int
    roles: frozenset

    @classmethod
    def of(cls, user_id: int, *roles) -> "Actor":
        return cls(user_id=int(user_id), roles=frozenset(Role(r) for r in roles))

    def has_role(self, role: Role) -> bool:
        return role in self.roles


def next_status(current: BookingStatus, event: BookingEvent) -> BookingStatus:
    rule = TRANSITIONS.get((current, event))
    if rule is None:
        raise InvalidTransition(current, event)
    return rule[0]


def parties(actor: Actor, customer_id: int, provider_user_id: int | None) -> frozenset:
    found = set()
    if actor.has_role(Role.CUSTOMER) and actor.user_id == customer_id:
        found.add(Party.CUSTOMER)
    if actor.has_role(Role.SERVICE_PROVIDER) and provider_user_id is not None and actor.user_id == provider_user_id:
        found.add(Party.PROVIDER)
    if actor.has_role(Role.ADMIN):
        found.add(Party.ADMIN)
    return frozenset(found)


def authorize(current: BookingStatus, event: BookingEvent, actor_parties: frozenset) -> None:
    """Check the transition first, then whether these parties may fire it."""
    next_status(current, event)
    allowed = TRANSITIONS[(current, event)][1]
    if actor_parties.isdisjoint(allowed):
        raise Unauthorized(f"Not allowed to {event.value.lower()} this booking")
