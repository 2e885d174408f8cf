"""Booking validation rules.

The rules run in a fixed order and stop at the first failure:

1. the interval must be non-empty,
2. it must not start in the past,
3. it must not span more calendar days than the actor's role allows,
4. the item must be active and the quantity must fit the item at all,
5. enough units must be free over the whole interval.

Nothing here writes to the store, so create, update and block expansion all
share the same checks.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlmodel import Session

from .config import Settings, settings as default_settings
from .exceptions import BadRequestError
from .ledger import ACTIVE_STATUSES, committed_quantity, remaining_quantity
from .models import Item
from .roles import has_team_capability

INVALID_INTERVAL = "INVALID_INTERVAL"
IN_THE_PAST = "IN_THE_PAST"
RANGE_TOO_LONG = "RANGE_TOO_LONG"
ITEM_UNAVAILABLE = "ITEM_UNAVAILABLE"
INSUFFICIENT_AVAILABILITY = "INSUFFICIENT_AVAILABILITY"


@dataclass(frozen=True)
class PolicyViolation:
    code: str
    reason: str


def max_range_days(role, settings: Settings = default_settings) -> int:
    if has_team_capability(role):
        return settings.max_range_days_team
    return settings.max_range_days_user


def calendar_span_days(start: datetime, end: datetime, tz_name: str = "UTC") -> int:
    """Count calendar days from the start day to the day of the last occupied instant.

    ``end`` is exclusive: a booking ending exactly at midnight does not
    occupy the day that begins at that midnight.
    """
    tz = ZoneInfo(tz_name)
    first = start.replace(tzinfo=timezone.utc).astimezone(tz).date()
    last = (end - timedelta(microseconds=1)).replace(tzinfo=timezone.utc).astimezone(tz).date()
    return (last - first).days


def validate(
    session: Session,
    item: Item,
    start: datetime,
    end: datetime,
    quantity: int,
    role,
    now: datetime,
    exclude_booking_id: Optional[str] = None,
    settings: Settings = default_settings,
) -> Optional[PolicyViolation]:
    """Return the first rule ``[start, end)`` breaks, or None if it is bookable."""
    if end <= start:
        return PolicyViolation(INVALID_INTERVAL, "End date must be after start date.")
    if start < now:
        return PolicyViolation(IN_THE_PAST, "Cannot book a time in the past.")

    ceiling = max_range_days(role, settings)
    if calendar_span_days(start, end, settings.calendar_timezone) > ceiling:
        return PolicyViolation(
            RANGE_TOO_LONG, f"Booking range cannot exceed {ceiling + 1} days."
        )

    if not item.active:
        return PolicyViolation(ITEM_UNAVAILABLE, "Item is not available for booking.")
    if quantity < 1 or quantity > item.total_quantity:
        return PolicyViolation(
            INSUFFICIENT_AVAILABILITY,
            f"Quantity must be between 1 and {item.total_quantity}.",
        )

    used = committed_quantity(
        session, item.id, start, end, ACTIVE_STATUSES, exclude_booking_id=exclude_booking_id
    )
    if quantity > remaining_quantity(item, used):
        return PolicyViolation(
            INSUFFICIENT_AVAILABILITY, "Not enough units available for that time."
        )
    return None


def enforce(*args, **kwargs) -> None:
    """Run ``validate`` and raise ``BadRequestError`` on a violation."""
    violation = validate(*args, **kwargs)
    if violation is not None:
        raise BadRequestError(violation.reason)
