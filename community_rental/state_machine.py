"""Booking statuses and the transitions allowed between them.

Every edge names who may take it: the rental team (``TEAM``), the booking's
owner (``OWNER``) or either of them (``OWNER_OR_TEAM``). The owner's
REQUESTED/ACCEPTED -> REQUESTED edges are the "update" operation, which
re-opens a booking for approval.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .exceptions import BadRequestError, ForbiddenError
from .models import Booking, BookingStatus, User
from .roles import has_team_capability


class Gate(str, Enum):
    TEAM = "TEAM"
    OWNER = "OWNER"
    OWNER_OR_TEAM = "OWNER_OR_TEAM"


@dataclass(frozen=True)
class Transition:
    source: BookingStatus
    target: BookingStatus
    gate: Gate


TRANSITIONS = (
    Transition(BookingStatus.REQUESTED, BookingStatus.ACCEPTED, Gate.TEAM),
    Transition(BookingStatus.REQUESTED, BookingStatus.DECLINED, Gate.TEAM),
    Transition(BookingStatus.REQUESTED, BookingStatus.CANCELLED, Gate.OWNER_OR_TEAM),
    Transition(BookingStatus.REQUESTED, BookingStatus.REQUESTED, Gate.OWNER),
    Transition(BookingStatus.ACCEPTED, BookingStatus.REQUESTED, Gate.OWNER),
    Transition(BookingStatus.ACCEPTED, BookingStatus.BORROWED, Gate.TEAM),
    Transition(BookingStatus.ACCEPTED, BookingStatus.CANCELLED, Gate.OWNER_OR_TEAM),
    Transition(BookingStatus.BORROWED, BookingStatus.COMPLETED, Gate.TEAM),
    Transition(BookingStatus.BORROWED, BookingStatus.CANCELLED, Gate.TEAM),
)

_EDGES = {(t.source, t.target): t for t in TRANSITIONS}

TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.DECLINED, BookingStatus.CANCELLED}
)
USER_EDITABLE_STATUSES = frozenset({BookingStatus.REQUESTED, BookingStatus.ACCEPTED})


def find_transition(source: BookingStatus, target: BookingStatus):
    return _EDGES.get((BookingStatus(source), BookingStatus(target)))


def actor_passes(gate: Gate, booking: Booking, actor: User) -> bool:
    is_owner = booking.requester_id == actor.id
    is_team = has_team_capability(actor.role)
    if gate is Gate.TEAM:
        return is_team
    if gate is Gate.OWNER:
        return is_owner
    return is_owner or is_team


def check_transition(
    booking: Booking, target: BookingStatus, actor: User, now: datetime
) -> Transition:
    """Return the edge ``booking`` would take to reach ``target``.

    Raises ``BadRequestError`` for an edge that does not exist or a
    completion before the booking has started, and ``ForbiddenError`` when
    ``actor`` may not take the edge.
    """
    transition = find_transition(booking.status, target)
    if transition is None:
        raise BadRequestError(
            f"Cannot change booking status from {BookingStatus(booking.status).value} "
            f"to {BookingStatus(target).value}."
        )
    if not actor_passes(transition.gate, booking, actor):
        raise ForbiddenError("Action not allowed.")
    if transition.target == BookingStatus.COMPLETED and booking.start_date > now:
        raise BadRequestError("Cannot mark booking as completed before it begins.")
    return transition
