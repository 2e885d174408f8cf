"""Committed-quantity queries.

Two intervals overlap when ``existing.start < query_end`` and
``existing.end > query_start``; touching intervals do not overlap.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from .models import Booking, BookingStatus, Item

ACTIVE_STATUSES = frozenset({BookingStatus.ACCEPTED, BookingStatus.BORROWED})
OPEN_STATUSES = frozenset(
    {BookingStatus.REQUESTED, BookingStatus.ACCEPTED, BookingStatus.BORROWED}
)


def _overlapping(
    query,
    item_id: str,
    start: datetime,
    end: datetime,
    statuses: Iterable[BookingStatus],
    exclude_booking_id: Optional[str] = None,
):
    query = (
        query.where(Booking.item_id == item_id)
        .where(Booking.status.in_(list(statuses)))
        .where(Booking.start_date < end)
        .where(Booking.end_date > start)
    )
    if exclude_booking_id:
        query = query.where(Booking.id != exclude_booking_id)
    return query


def committed_quantity(
    session: Session,
    item_id: str,
    start: datetime,
    end: datetime,
    statuses: Iterable[BookingStatus] = ACTIVE_STATUSES,
    exclude_booking_id: Optional[str] = None,
) -> int:
    """Sum the quantity of bookings for ``item_id`` overlapping ``[start, end)``.

    Only bookings whose status is in ``statuses`` count. ``exclude_booking_id``
    leaves one booking out, so a booking being edited does not compete with
    itself.
    """
    query = _overlapping(
        select(func.coalesce(func.sum(Booking.quantity), 0)),
        item_id,
        start,
        end,
        statuses,
        exclude_booking_id,
    )
    return int(session.exec(query).one())


def overlapping_bookings(
    session: Session,
    item_id: str,
    start: datetime,
    end: datetime,
    statuses: Iterable[BookingStatus] = OPEN_STATUSES,
) -> List[Booking]:
    query = _overlapping(select(Booking), item_id, start, end, statuses)
    return list(session.exec(query.order_by(Booking.start_date)).all())


def remaining_quantity(item: Item, committed: int) -> int:
    return max(item.total_quantity - committed, 0)
