"""Recurring administrative blocks.

A block request names a first interval and a recurrence rule. The rule is
expanded into candidate intervals of the same length; each candidate is
booked on its own, in order, so later candidates see the ones created
before them. A candidate that does not fit, or that keeps losing a write
conflict, is skipped and counted rather than failing the whole series.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from .clock import as_utc
from .exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from .lifecycle import BookingService
from .models import Booking, Frequency, Item, RecurrenceRule, User
from .roles import has_team_capability

logger = logging.getLogger(__name__)

STEPS = {
    Frequency.DAILY: relativedelta(days=1),
    Frequency.WEEKLY: relativedelta(weeks=1),
    Frequency.BIWEEKLY: relativedelta(weeks=2),
    Frequency.MONTHLY: relativedelta(months=1),
}


def generate_occurrences(
    start: datetime,
    end: datetime,
    rule: Optional[RecurrenceRule] = None,
    max_occurrences: int = 52,
) -> Iterator[Tuple[datetime, datetime]]:
    """Yield ``(start, end)`` candidates for a block series.

    The first interval is always a candidate. Steps are taken from the first
    start, so a monthly series that starts on the 31st lands on the last day
    of shorter months and returns to the 31st afterwards. The series stops
    once a start would fall after ``rule.until`` or after ``max_occurrences``
    candidates.
    """
    duration = end - start
    frequency = rule.frequency if rule else Frequency.NONE
    until = as_utc(rule.until) if rule and rule.until else start

    if frequency == Frequency.NONE:
        yield start, end
        return

    step = STEPS[frequency]
    for index in range(max_occurrences):
        current = start + step * index
        if index and current > until:
            return
        yield current, current + duration


@dataclass
class SkippedOccurrence:
    start: datetime
    end: datetime
    reason: str


@dataclass
class BlockResult:
    title: str
    created: List[Booking] = field(default_factory=list)
    skipped: List[SkippedOccurrence] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


class BlockExpander:
    def __init__(self, service: BookingService):
        self.service = service

    def expand(
        self,
        item_id: str,
        actor: User,
        start: datetime,
        end: datetime,
        rule: Optional[RecurrenceRule] = None,
        quantity: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> BlockResult:
        if not has_team_capability(actor.role):
            raise ForbiddenError("Only the rental team can block slots.")
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            raise BadRequestError("End date must be after start date.")

        item = self.service.session.get(Item, item_id)
        if item is None:
            raise NotFoundError("Item not found.")
        quantity = quantity if quantity is not None else item.total_quantity
        if quantity < 1:
            raise BadRequestError("Block quantity must be at least 1.")
        if quantity > item.total_quantity:
            raise BadRequestError("Block quantity cannot exceed available quantity.")
        if reason and len(reason.strip()) > self.service.settings.max_note_length:
            raise BadRequestError("Block reason is too long.")

        result = BlockResult(title=item.title)
        candidates = generate_occurrences(
            start, end, rule, max_occurrences=self.service.settings.max_block_occurrences
        )
        for occurrence_start, occurrence_end in candidates:
            try:
                booking = self.service.create_block(
                    item_id, actor, occurrence_start, occurrence_end, quantity, reason
                )
            except (BadRequestError, ConflictError) as exc:
                logger.info(
                    "Skipping block %s - %s on item %s: %s",
                    occurrence_start,
                    occurrence_end,
                    item_id,
                    exc.reason,
                )
                result.skipped.append(SkippedOccurrence(occurrence_start, occurrence_end, exc.reason))
                continue
            result.created.append(booking)

        logger.info(
            "Blocked item %s: created %d, skipped %d",
            item_id,
            result.created_count,
            result.skipped_count,
        )
        return result
