"""Booking lifecycle operations.

``BookingService`` is the only code that writes a booking's status. Each
public method is one transaction: it locks the item row, re-reads what it
needs, validates, writes and commits. Notifications go out after the commit
and a failing notifier never undoes a change.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from .audit import log_action
from .clock import as_utc, utcnow
from .config import Settings, settings as default_settings
from .database import lock_item
from .exceptions import BadRequestError, BookingError, ConflictError, ForbiddenError, NotFoundError
from .ledger import ACTIVE_STATUSES, committed_quantity, remaining_quantity
from .models import ADMIN_BLOCK_PREFIX, Booking, BookingNote, BookingStatus, NoteKind, User
from .notifications import NullNotifier, Recipient
from .policy import enforce
from .roles import Role, has_team_capability
from .state_machine import USER_EDITABLE_STATUSES, check_transition

logger = logging.getLogger(__name__)


def _recipient(user: Optional[User]) -> Optional[Recipient]:
    if user is None:
        return None
    return Recipient(id=user.id, email=user.email, name=user.name)


class BookingService:
    def __init__(
        self,
        session: Session,
        notifier=None,
        clock: Optional[Callable[[], datetime]] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.notifier = notifier or NullNotifier()
        self.now = clock or utcnow
        self.settings = settings or default_settings

    # --- plumbing ---

    def _atomic(self, operation):
        """Run ``operation`` and commit, retrying when the store reports a lock conflict."""
        attempts = max(self.settings.transaction_retries, 1)
        for attempt in range(1, attempts + 1):
            try:
                result = operation()
                self.session.commit()
                return result
            except BookingError:
                self.session.rollback()
                raise
            except OperationalError:
                self.session.rollback()
                logger.warning("Booking transaction conflict (attempt %d/%d)", attempt, attempts)
        raise ConflictError("The booking changed while saving. Please try again.")

    def _load_locked(self, booking_id: str) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found.")
        lock_item(self.session, booking.item_id)
        # Re-read under the item lock so status checks see the latest commit.
        self.session.refresh(booking)
        return booking

    def _clean_note(self, body: Optional[str]) -> Optional[str]:
        if body is None:
            return None
        body = body.strip()
        if not body:
            return None
        limit = self.settings.max_note_length
        if len(body) > limit:
            raise BadRequestError(f"Notes cannot be longer than {limit} characters.")
        return body

    def _add_note(self, booking: Booking, body: str, kind: NoteKind, author_id: Optional[str]):
        booking.notes.append(
            BookingNote(author_id=author_id, kind=kind, body=body, created_at=self.now())
        )

    def _set_status(self, booking: Booking, status: BookingStatus, user_id: Optional[str]):
        booking.status = status
        booking.updated_at = self.now()
        self.session.add(booking)
        log_action(self.session, f"status:{status.value}", user_id=user_id, booking_id=booking.id)

    def _release(self):
        """End the read transaction opened while gathering notification data.

        The notifier may write through a connection of its own, which must
        not wait on a lock this session still holds.
        """
        self.session.commit()

    def _notify_status(self, booking: Booking, status: BookingStatus, actor_name: Optional[str]):
        booking_id = booking.id
        try:
            recipients = [r for r in (_recipient(booking.requester), _recipient(booking.assigned_to)) if r]
            details = (
                booking.item.title,
                booking.start_date,
                booking.end_date,
                booking.latest_note,
            )
            self._release()
            self.notifier.notify(recipients, booking_id, status, *details, actor_name=actor_name)
        except Exception:
            logger.exception("Failed to send status notification for booking %s", booking_id)

    def _notify_request(self, booking: Booking, requester: User):
        booking_id = booking.id
        try:
            recipients: List[Recipient] = [
                Recipient(id=member.id, email=member.email, name=member.name)
                for member in booking.item.responsible_members
                if member.id != requester.id
            ]
            item_title = booking.item.title
            requester_name = requester.display_name
            self._release()
            self.notifier.notify_request(recipients, booking_id, item_title, requester_name)
        except Exception:
            logger.exception("Failed to send booking request notification for booking %s", booking_id)

    # --- operations ---

    def create(
        self,
        item_id: str,
        actor: User,
        quantity: int,
        start: datetime,
        end: datetime,
        notes: Optional[str] = None,
    ) -> Booking:
        """Request ``quantity`` units of an item for ``[start, end)``."""
        start, end = as_utc(start), as_utc(end)
        note = self._clean_note(notes)

        def operation():
            item = lock_item(self.session, item_id)
            if item is None:
                raise NotFoundError("Item not found.")
            now = self.now()
            enforce(self.session, item, start, end, quantity, actor.role, now, settings=self.settings)
            booking = Booking(
                item_id=item.id,
                requester_id=actor.id,
                quantity=quantity,
                start_date=start,
                end_date=end,
                status=BookingStatus.REQUESTED,
                created_at=now,
                updated_at=now,
            )
            if note:
                self._add_note(booking, note, NoteKind.REQUESTER, actor.id)
            self.session.add(booking)
            self.session.flush()
            log_action(self.session, "booking:create", user_id=actor.id, booking_id=booking.id)
            return booking

        booking = self._atomic(operation)
        logger.info(
            "User %s requested %d x item %s (booking %s)", actor.id, quantity, item_id, booking.id
        )
        self._notify_request(booking, actor)
        return booking

    def user_update(
        self,
        booking_id: str,
        actor: User,
        start: datetime,
        end: datetime,
        notes: Optional[str] = None,
    ) -> Booking:
        """Let the owner move a pending or accepted booking; it goes back to REQUESTED."""
        start, end = as_utc(start), as_utc(end)
        note = self._clean_note(notes)

        def operation():
            booking = self._load_locked(booking_id)
            if booking.requester_id != actor.id:
                raise ForbiddenError("You can only update your own bookings.")
            if booking.status not in USER_EDITABLE_STATUSES:
                raise BadRequestError(
                    f'Bookings with status "{booking.status.value}" cannot be updated by user.'
                )
            now = self.now()
            check_transition(booking, BookingStatus.REQUESTED, actor, now)
            enforce(
                self.session,
                booking.item,
                start,
                end,
                booking.quantity,
                actor.role,
                now,
                exclude_booking_id=booking.id,
                settings=self.settings,
            )
            previous = booking.status
            booking.start_date = start
            booking.end_date = end
            if note and note != booking.latest_note:
                self._add_note(booking, note, NoteKind.REQUESTER, actor.id)
            if previous != BookingStatus.REQUESTED:
                self._set_status(booking, BookingStatus.REQUESTED, actor.id)
            else:
                booking.updated_at = now
                self.session.add(booking)
            log_action(self.session, "booking:update", user_id=actor.id, booking_id=booking.id)
            return booking, previous

        booking, previous = self._atomic(operation)
        logger.info("Booking %s updated by owner (was %s)", booking.id, previous.value)
        if previous == BookingStatus.ACCEPTED and booking.assigned_to is not None:
            self._notify_status(booking, BookingStatus.REQUESTED, actor.display_name)
        return booking

    def cancel(self, booking_id: str, actor: User) -> Booking:
        def operation():
            booking = self._load_locked(booking_id)
            if booking.requester_id != actor.id and not has_team_capability(actor.role):
                raise ForbiddenError("Action not allowed.")
            if booking.status not in USER_EDITABLE_STATUSES:
                raise BadRequestError(
                    f'Bookings with status "{booking.status.value}" cannot be cancelled.'
                )
            check_transition(booking, BookingStatus.CANCELLED, actor, self.now())
            self._set_status(booking, BookingStatus.CANCELLED, actor.id)
            return booking

        booking = self._atomic(operation)
        logger.info("Booking %s cancelled by %s", booking.id, actor.id)
        self._notify_status(booking, BookingStatus.CANCELLED, actor.display_name)
        return booking

    def team_transition(
        self,
        booking_id: str,
        actor: User,
        target: BookingStatus,
        note: Optional[str] = None,
    ) -> Booking:
        """Move a booking along a rental-team edge of the state machine."""
        if not has_team_capability(actor.role):
            raise ForbiddenError("Access denied.")
        target = BookingStatus(target)
        if target == BookingStatus.REQUESTED:
            raise BadRequestError("Bookings are re-opened by their owner updating them.")
        reason = self._clean_note(note)

        def operation():
            booking = self._load_locked(booking_id)
            if target == BookingStatus.DECLINED and self.settings.require_decline_reason and not reason:
                raise BadRequestError("A reason is required to decline a booking.")
            check_transition(booking, target, actor, self.now())
            if target == BookingStatus.ACCEPTED:
                used = committed_quantity(
                    self.session,
                    booking.item_id,
                    booking.start_date,
                    booking.end_date,
                    ACTIVE_STATUSES,
                    exclude_booking_id=booking.id,
                )
                if booking.quantity > remaining_quantity(booking.item, used):
                    raise BadRequestError("Not enough units available for that time.")
            if target == BookingStatus.BORROWED and not booking.assigned_to_id:
                booking.assigned_to_id = actor.id
            if reason:
                self._add_note(booking, reason, NoteKind.TEAM, actor.id)
            self._set_status(booking, target, actor.id)
            return booking

        booking = self._atomic(operation)
        logger.info("Booking %s moved to %s by %s", booking.id, target.value, actor.id)
        self._notify_status(booking, target, actor.display_name)
        return booking

    def add_team_note(self, booking_id: str, actor: User, body: str) -> Booking:
        if not has_team_capability(actor.role):
            raise ForbiddenError("Access denied.")
        note = self._clean_note(body)
        if not note:
            raise BadRequestError("Note cannot be empty.")

        def operation():
            booking = self.session.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError("Booking not found.")
            self._add_note(booking, note, NoteKind.TEAM, actor.id)
            booking.updated_at = self.now()
            self.session.add(booking)
            log_action(self.session, "notes:added", user_id=actor.id, booking_id=booking.id)
            return booking

        return self._atomic(operation)

    def create_block(
        self,
        item_id: str,
        actor: User,
        start: datetime,
        end: datetime,
        quantity: int,
        reason: Optional[str] = None,
    ) -> Booking:
        """Take units out of circulation for maintenance or club use.

        Blocks are born ACCEPTED so they count against capacity straight away.
        """
        if not has_team_capability(actor.role):
            raise ForbiddenError("Only the rental team can block slots.")
        start, end = as_utc(start), as_utc(end)
        reason = self._clean_note(reason)
        body = f"{ADMIN_BLOCK_PREFIX} {reason}" if reason else ADMIN_BLOCK_PREFIX

        def operation():
            item = lock_item(self.session, item_id)
            if item is None:
                raise NotFoundError("Item not found.")
            now = self.now()
            enforce(self.session, item, start, end, quantity, actor.role, now, settings=self.settings)
            booking = Booking(
                item_id=item.id,
                requester_id=actor.id,
                assigned_to_id=actor.id,
                quantity=quantity,
                start_date=start,
                end_date=end,
                status=BookingStatus.ACCEPTED,
                is_block=True,
                created_at=now,
                updated_at=now,
            )
            self._add_note(booking, body, NoteKind.BLOCK, actor.id)
            self.session.add(booking)
            self.session.flush()
            log_action(self.session, "blocked:create", user_id=actor.id, booking_id=booking.id)
            return booking

        return self._atomic(operation)

    def system_transition(
        self, booking_id: str, target: BookingStatus, reason: Optional[str] = None
    ) -> Booking:
        """Apply a transition on behalf of the scheduler rather than a person.

        The edge must exist in the state machine and the completion guard
        still applies; role gates do not.
        """
        target = BookingStatus(target)
        if target == BookingStatus.REQUESTED:
            raise BadRequestError("Bookings are re-opened by their owner updating them.")
        system = User(id="", username="system", email="", role=Role.ADMIN)

        def operation():
            booking = self._load_locked(booking_id)
            check_transition(booking, target, system, self.now())
            if reason:
                self._add_note(booking, reason, NoteKind.SYSTEM, None)
            self._set_status(booking, target, None)
            return booking

        booking = self._atomic(operation)
        logger.info("Booking %s moved to %s by the scheduler", booking.id, target.value)
        self._notify_status(booking, target, None)
        return booking
