"""Notification collaborator.

The lifecycle service tells a ``Notifier`` about status changes and new
requests once its transaction has committed. How a notification reaches a
person (push, e-mail, server-sent events) is somebody else's concern; the
default ``InAppNotifier`` only stores ``Notification`` rows that those
channels read.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

from sqlmodel import Session

from .clock import isoformat_z
from .models import BookingStatus, Notification, NotificationKind

logger = logging.getLogger(__name__)

STATUS_MESSAGE_KEYS: Dict[BookingStatus, str] = {
    BookingStatus.REQUESTED: "notifications.status.requested",
    BookingStatus.ACCEPTED: "notifications.status.accepted",
    BookingStatus.DECLINED: "notifications.status.declined",
    BookingStatus.BORROWED: "notifications.status.borrowed",
    BookingStatus.COMPLETED: "notifications.status.completed",
    BookingStatus.CANCELLED: "notifications.status.cancelled",
}
BOOKING_REQUEST_KEY = "notifications.bookingRequest"


@dataclass(frozen=True)
class Recipient:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


def dedupe_recipients(recipients: Iterable[Optional[Recipient]]) -> List[Recipient]:
    seen = {}
    for recipient in recipients:
        if recipient is None or not recipient.id:
            continue
        seen.setdefault(recipient.id, recipient)
    return list(seen.values())


def status_message(status: BookingStatus, item_title: str, actor_name: Optional[str] = None) -> str:
    key = STATUS_MESSAGE_KEYS[BookingStatus(status)]
    variables = {"item": item_title}
    if actor_name:
        key += "By"
        variables["actor"] = actor_name
    return json.dumps({"key": key, "vars": variables})


class Notifier(Protocol):
    def notify(
        self,
        recipients: List[Recipient],
        booking_id: str,
        status: BookingStatus,
        item_title: str,
        start: datetime,
        end: datetime,
        notes: Optional[str],
        actor_name: Optional[str] = None,
    ) -> None: ...

    def notify_request(
        self,
        recipients: List[Recipient],
        booking_id: str,
        item_title: str,
        requester_name: Optional[str],
    ) -> None: ...


class NullNotifier:
    def notify(self, recipients, booking_id, status, item_title, start, end, notes, actor_name=None):
        return None

    def notify_request(self, recipients, booking_id, item_title, requester_name):
        return None


class InAppNotifier:
    """Store one ``Notification`` row per recipient in a session of its own."""

    def __init__(self, engine):
        self.engine = engine

    def notify(self, recipients, booking_id, status, item_title, start, end, notes, actor_name=None):
        recipients = dedupe_recipients(recipients)
        if not recipients:
            return
        # A hand-over nobody performed is the automatic job; owners are not pinged for it.
        if status == BookingStatus.BORROWED and not actor_name:
            return
        message = status_message(status, item_title, actor_name)
        with Session(self.engine) as session:
            for recipient in recipients:
                session.add(
                    Notification(
                        user_id=recipient.id,
                        booking_id=booking_id,
                        kind=NotificationKind.BOOKING_RESPONSE,
                        message=message,
                    )
                )
            session.commit()
        logger.info(
            "Notified %d recipient(s) of booking %s -> %s (%s to %s)",
            len(recipients),
            booking_id,
            BookingStatus(status).value,
            isoformat_z(start),
            isoformat_z(end),
        )

    def notify_request(self, recipients, booking_id, item_title, requester_name):
        recipients = dedupe_recipients(recipients)
        if not recipients:
            return
        variables = {"item": item_title}
        if requester_name:
            variables["requester"] = requester_name
        message = json.dumps({"key": BOOKING_REQUEST_KEY, "vars": variables})
        with Session(self.engine) as session:
            for recipient in recipients:
                session.add(
                    Notification(
                        user_id=recipient.id,
                        booking_id=booking_id,
                        kind=NotificationKind.BOOKING_REQUEST,
                        message=message,
                    )
                )
            session.commit()
        logger.info("Sent booking request %s to %d team member(s)", booking_id, len(recipients))
