"""Periodic housekeeping for bookings.

Run from cron (``python -m community_rental.jobs``). Each job selects the
bookings it is interested in and moves them through ``BookingService`` so
the state machine and capacity rules still hold.
"""

import logging
from datetime import timedelta

from sqlmodel import Session, select

from .exceptions import BookingError
from .lifecycle import BookingService
from .models import Booking, BookingStatus

logger = logging.getLogger(__name__)

AUTO_CANCEL_REASON = (
    "This booking was automatically cancelled because the booking end time has passed."
)


def _run(service: BookingService, bookings, target: BookingStatus, reason=None) -> int:
    changed = 0
    for booking_id in [booking.id for booking in bookings]:
        try:
            service.system_transition(booking_id, target, reason=reason)
            changed += 1
        except BookingError as exc:
            logger.warning("Could not move booking %s to %s: %s", booking_id, target.value, exc.reason)
    return changed


def cancel_expired_bookings(service: BookingService) -> int:
    """Cancel requests and approvals whose end time has already passed."""
    now = service.now()
    expired = service.session.exec(
        select(Booking)
        .where(Booking.end_date < now)
        .where(Booking.status.in_([BookingStatus.REQUESTED, BookingStatus.ACCEPTED]))
    ).all()
    return _run(service, expired, BookingStatus.CANCELLED, reason=AUTO_CANCEL_REASON)


def mark_upcoming_borrowed(service: BookingService) -> int:
    """Hand out accepted bookings that start within the lead window."""
    now = service.now()
    soon = now + timedelta(minutes=service.settings.auto_borrow_lead_minutes)
    upcoming = service.session.exec(
        select(Booking)
        .where(Booking.status == BookingStatus.ACCEPTED)
        .where(Booking.is_block == False)  # noqa: E712
        .where(Booking.start_date >= now)
        .where(Booking.start_date <= soon)
    ).all()
    return _run(service, upcoming, BookingStatus.BORROWED)


def complete_stale_borrowed(service: BookingService) -> int:
    """Close borrowed bookings nobody has touched for ``stale_borrow_days``."""
    now = service.now()
    threshold = now - timedelta(days=service.settings.stale_borrow_days)
    stale = service.session.exec(
        select(Booking)
        .where(Booking.status == BookingStatus.BORROWED)
        .where(Booking.updated_at <= threshold)
        .where(Booking.start_date <= now)
    ).all()
    return _run(service, stale, BookingStatus.COMPLETED)


def run_all(service: BookingService) -> dict:
    return {
        "cancelled": cancel_expired_bookings(service),
        "borrowed": mark_upcoming_borrowed(service),
        "completed": complete_stale_borrowed(service),
    }


if __name__ == "__main__":
    from .config import settings
    from .database import engine
    from .notifications import InAppNotifier

    logging.basicConfig(
        level=settings.log_level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
    with Session(engine) as session:
        counts = run_all(BookingService(session, notifier=InAppNotifier(engine)))
    logger.info("Maintenance finished: %s", counts)
