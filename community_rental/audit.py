from typing import Optional

from sqlmodel import Session

from .models import ActionLog


def log_action(
    session: Session,
    message: str,
    user_id: Optional[str] = None,
    booking_id: Optional[str] = None,
) -> ActionLog:
    """Record an action in the audit trail as part of the caller's transaction."""
    entry = ActionLog(user_id=user_id, booking_id=booking_id, message=message)
    session.add(entry)
    return entry
