import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import and_, or_
from sqlmodel import Session, select

from .auth import get_current_user, require_team
from .clock import as_utc
from .config import settings
from .database import create_db_and_tables, get_session
from .exceptions import (
    BAD_REQUEST,
    CONFLICT,
    FORBIDDEN,
    NOT_FOUND,
    RATE_LIMITED,
    BadRequestError,
    BookingError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
)
from .ledger import OPEN_STATUSES, overlapping_bookings
from .lifecycle import BookingService
from .models import (
    AvailabilitySlot,
    BlockCreate,
    BlockResultRead,
    Booking,
    BookingCreate,
    BookingRead,
    BookingStatus,
    BookingUpdate,
    Item,
    ItemCategory,
    ItemMemberLink,
    ItemRead,
    NoteCreate,
    SkippedRead,
    StatusChange,
    TeamBookingPage,
    User,
)
from .notifications import InAppNotifier
from .rate_limit import RateLimiter, SlidingWindowRateLimiter
from .recurrence import BlockExpander
from .roles import has_team_capability, is_admin

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    BAD_REQUEST: 400,
    CONFLICT: 400,
    FORBIDDEN: 403,
    NOT_FOUND: 404,
    RATE_LIMITED: 429,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    yield


app = FastAPI(
    lifespan=lifespan,
    title="Community rental bookings API",
    description="API to book a residential community's shared rooms, sports equipment and games.",
    version="0.3.0",
)
app.state.rate_limiter = SlidingWindowRateLimiter(
    settings.booking_rate_limit, settings.booking_rate_window_seconds
)


@app.exception_handler(BookingError)
def booking_error_handler(request: Request, exc: BookingError):
    status_code = ERROR_STATUS_CODES.get(exc.kind, 400)
    logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.kind, exc.reason)
    return JSONResponse(status_code=status_code, content={"detail": exc.reason, "kind": exc.kind})


def get_notifier(session: Session = Depends(get_session)):
    return InAppNotifier(session.get_bind())


def get_booking_service(
    session: Session = Depends(get_session), notifier=Depends(get_notifier)
) -> BookingService:
    return BookingService(session, notifier=notifier)


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


@app.get("/healthz", summary="Liveness check", tags=["Health"])
def healthz():
    return {"ok": True}


# --- Items ---
@app.get(
    "/items",
    response_model=list[ItemRead],
    dependencies=[Depends(get_current_user)],
    summary="List bookable items",
    response_description="List of items",
    tags=["Items"],
)
def list_items(
    session: Session = Depends(get_session),
    category: Optional[ItemCategory] = Query(None, description="Filter by item category"),
    title: Optional[str] = Query(
        None,
        description="Filter by item title (partial match)",
        min_length=1,
        max_length=100,
    ),
):
    """
    List active items with optional filtering by category or title.

    - **category**: Optional filter by item category
    - **title**: Optional filter by item title (partial match)
    """
    query = select(Item).where(Item.active == True)  # noqa: E712
    if category:
        query = query.where(Item.category == category)
    if title:
        query = query.where(Item.title.contains(title))
    return session.exec(query.order_by(Item.title)).all()


@app.get(
    "/items/{id}",
    response_model=ItemRead,
    dependencies=[Depends(get_current_user)],
    summary="Get item",
    tags=["Items"],
)
def read_item(id: str, session: Session = Depends(get_session)):
    item = session.get(Item, id)
    if not item:
        raise NotFoundError("Item not found.")
    return item


@app.get(
    "/items/{id}/availability",
    response_model=list[AvailabilitySlot],
    summary="Bookings that occupy an item over a time window",
    tags=["Items"],
)
def check_availability(
    id: str,
    from_: datetime = Query(..., alias="from", description="Window start (ISO-8601)"),
    to: datetime = Query(..., description="Window end (ISO-8601)"),
    session: Session = Depends(get_session),
):
    """
    List requested, accepted and borrowed bookings overlapping ``[from, to)``
    so a client can draw the item's calendar. No login required.
    """
    start, end = as_utc(from_), as_utc(to)
    if end <= start:
        raise BadRequestError("End date must be after start date.")
    item = session.get(Item, id)
    if not item:
        raise NotFoundError("Item not found.")
    return [
        AvailabilitySlot(
            id=booking.id,
            start_date=booking.start_date,
            end_date=booking.end_date,
            status=booking.status,
            quantity=booking.quantity,
        )
        for booking in overlapping_bookings(session, item.id, start, end, OPEN_STATUSES)
    ]


@app.post(
    "/items/{id}/blocks",
    response_model=BlockResultRead,
    summary="Block an item for maintenance or club use",
    response_description="Created and skipped occurrences",
    tags=["Items"],
)
def block_slots(
    id: str,
    block: BlockCreate,
    current_user: Annotated[User, Depends(require_team)],
    service: BookingService = Depends(get_booking_service),
):
    """
    Take units of an item out of circulation, optionally repeating.
    Occurrences that clash with existing bookings are skipped and reported.
    Rental team only.
    """
    result = BlockExpander(service).expand(
        id,
        current_user,
        block.start,
        block.end,
        rule=block.recurrence,
        quantity=block.quantity,
        reason=block.reason,
    )
    return BlockResultRead(
        created_count=result.created_count,
        skipped_count=result.skipped_count,
        skipped=[SkippedRead(start=s.start, end=s.end, reason=s.reason) for s in result.skipped],
        title=result.title,
    )


# --- Booking Routes ---
@app.post(
    "/bookings",
    response_model=BookingRead,
    summary="Request a booking",
    response_description="Booking data",
    tags=["Bookings"],
)
def create_booking(
    booking: BookingCreate,
    current_user: Annotated[User, Depends(get_current_user)],
    service: BookingService = Depends(get_booking_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Request units of an item for a time window. The booking starts out REQUESTED.
    - **item_id**: Item requested
    - **quantity**: Number of units
    - **start**: Start of the booking (ISO-8601)
    - **end**: End of the booking, exclusive (ISO-8601)
    """
    if not limiter.hit(current_user.id):
        raise RateLimitedError("Too many booking requests. Please try again later.")
    db_booking = service.create(
        booking.item_id,
        current_user,
        booking.quantity,
        booking.start,
        booking.end,
        notes=booking.notes,
    )
    return BookingRead.from_booking(db_booking)


@app.put(
    "/bookings/{id}",
    response_model=BookingRead,
    summary="Update own booking",
    response_description="Updated booking data",
    tags=["Bookings"],
)
def update_booking(
    id: str,
    updated_booking: BookingUpdate,
    current_user: Annotated[User, Depends(get_current_user)],
    service: BookingService = Depends(get_booking_service),
):
    """
    Move an own booking to a new time. Accepted bookings go back to REQUESTED
    and need approving again.
    - **id**: Booking ID
    """
    db_booking = service.user_update(
        id, current_user, updated_booking.start, updated_booking.end, notes=updated_booking.notes
    )
    return BookingRead.from_booking(db_booking)


@app.post(
    "/bookings/{id}/cancel",
    response_model=BookingRead,
    summary="Cancel booking",
    tags=["Bookings"],
)
def cancel_booking(
    id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    service: BookingService = Depends(get_booking_service),
):
    """
    Cancel a requested or accepted booking. Owner or rental team.
    - **id**: Booking ID
    """
    return BookingRead.from_booking(service.cancel(id, current_user))


@app.post(
    "/bookings/{id}/status",
    response_model=BookingRead,
    summary="Change booking status",
    tags=["Bookings"],
)
def transition_booking(
    id: str,
    change: StatusChange,
    current_user: Annotated[User, Depends(get_current_user)],
    service: BookingService = Depends(get_booking_service),
):
    """
    Accept, decline, hand out, complete or cancel a booking. Rental team only.
    - **status**: Target status
    - **note**: Reason shown to the requester (required when declining)
    """
    db_booking = service.team_transition(id, current_user, change.status, note=change.note)
    return BookingRead.from_booking(db_booking)


@app.post(
    "/bookings/{id}/notes",
    response_model=BookingRead,
    summary="Add a rental team note",
    tags=["Bookings"],
)
def add_note(
    id: str,
    note: NoteCreate,
    current_user: Annotated[User, Depends(get_current_user)],
    service: BookingService = Depends(get_booking_service),
):
    return BookingRead.from_booking(service.add_team_note(id, current_user, note.body))


@app.get(
    "/bookings",
    response_model=list[BookingRead],
    summary="List bookings",
    response_description="List of bookings",
    tags=["Bookings"],
)
def list_bookings(
    current_user: Annotated[User, Depends(get_current_user)],
    session: Session = Depends(get_session),
    status: Optional[BookingStatus] = Query(None, description="Show only this status"),
    all_bookings: bool = Query(
        False, alias="all", description="Rental team only: show everyone's bookings"
    ),
):
    """List the current user's bookings, newest start first.
    - **status**: Optional filter on booking status
    - **all**: Include other users' bookings (rental team only)
    """
    query = select(Booking)
    if all_bookings:
        if not has_team_capability(current_user.role):
            raise ForbiddenError("Access denied.")
    else:
        query = query.where(Booking.requester_id == current_user.id)
    if status:
        query = query.where(Booking.status == status)

    bookings = session.exec(query.order_by(Booking.start_date.desc(), Booking.id)).all()
    return [BookingRead.from_booking(booking) for booking in bookings]


@app.get(
    "/bookings/team",
    response_model=TeamBookingPage,
    summary="Rental team booking queue",
    tags=["Bookings"],
)
def list_team_bookings(
    current_user: Annotated[User, Depends(require_team)],
    session: Session = Depends(get_session),
    status: Optional[BookingStatus] = Query(
        None, description="Show only this status (default: all open bookings)"
    ),
    search: Optional[str] = Query(
        None,
        description="Match item title or requester name, username or email",
        min_length=1,
        max_length=100,
    ),
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = Query(None, description="Booking ID to continue after"),
):
    """
    Bookings the rental team has to act on, soonest first. Administrative
    blocks are left out. Rental members who are not admins only see items
    they are responsible for.
    """
    query = (
        select(Booking)
        .join(Item, Item.id == Booking.item_id)
        .join(User, User.id == Booking.requester_id)
        .where(Booking.is_block == False)  # noqa: E712
    )
    if status:
        query = query.where(Booking.status == status)
    else:
        query = query.where(Booking.status.in_(list(OPEN_STATUSES)))
    if not is_admin(current_user.role):
        responsible = select(ItemMemberLink.item_id).where(ItemMemberLink.user_id == current_user.id)
        query = query.where(Booking.item_id.in_(responsible))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(
            or_(
                Item.title.ilike(pattern),
                User.name.ilike(pattern),
                User.username.ilike(pattern),
                User.email.ilike(pattern),
            )
        )
    if cursor:
        after = session.get(Booking, cursor)
        if not after:
            raise BadRequestError("Invalid cursor.")
        query = query.where(
            or_(
                Booking.start_date > after.start_date,
                and_(Booking.start_date == after.start_date, Booking.id > after.id),
            )
        )

    rows = session.exec(query.order_by(Booking.start_date, Booking.id).limit(limit + 1)).all()
    next_cursor = rows[limit - 1].id if len(rows) > limit else None
    return TeamBookingPage(
        bookings=[BookingRead.from_booking(booking) for booking in rows[:limit]],
        next_cursor=next_cursor,
    )
