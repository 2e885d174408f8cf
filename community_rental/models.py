import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import NaiveDatetime, field_serializer
from sqlmodel import Field, Relationship, SQLModel

from .clock import isoformat_z, utcnow
from .roles import Role

ADMIN_BLOCK_PREFIX = "[ADMIN BLOCK]"


def new_id() -> str:
    return uuid.uuid4().hex


class BookingStatus(str, Enum):
    REQUESTED = "REQUESTED"
    ACCEPTED = "ACCEPTED"
    BORROWED = "BORROWED"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"


class ItemCategory(str, Enum):
    ROOM = "ROOM"
    SPORTS = "SPORTS"
    GAME = "GAME"
    OTHER = "OTHER"


class NoteKind(str, Enum):
    REQUESTER = "REQUESTER"
    TEAM = "TEAM"
    SYSTEM = "SYSTEM"
    BLOCK = "BLOCK"


class NotificationKind(str, Enum):
    BOOKING_REQUEST = "BOOKING_REQUEST"
    BOOKING_RESPONSE = "BOOKING_RESPONSE"


############
# USER MODEL
############


class ItemMemberLink(SQLModel, table=True):
    item_id: str = Field(foreign_key="item.id", primary_key=True)
    user_id: str = Field(foreign_key="user.id", primary_key=True)


class UserBase(SQLModel):
    username: str = Field(index=True, unique=True)
    email: str = Field(index=True)
    name: Optional[str] = None
    role: Role = Role.USER


class User(UserBase, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)

    @property
    def display_name(self) -> str:
        return (self.name or "").strip() or self.email or self.username


################
# ITEM MODEL
################


class ItemBase(SQLModel):
    title: str
    category: ItemCategory = ItemCategory.OTHER
    total_quantity: int = Field(default=1, ge=1)
    active: bool = True


class Item(ItemBase, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)

    responsible_members: List[User] = Relationship(link_model=ItemMemberLink)


class ItemRead(ItemBase):
    id: str


###############
# BOOKING MODEL
###############


class BookingNote(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: str = Field(foreign_key="booking.id", index=True)
    author_id: Optional[str] = Field(default=None, foreign_key="user.id")
    kind: NoteKind = NoteKind.REQUESTER
    body: str
    created_at: NaiveDatetime = Field(default_factory=utcnow)

    booking: Optional["Booking"] = Relationship(back_populates="notes")


class BookingBase(SQLModel):
    item_id: str = Field(foreign_key="item.id", index=True)
    quantity: int = Field(default=1, ge=1)
    start_date: NaiveDatetime = Field(index=True)
    end_date: NaiveDatetime = Field(index=True)


class Booking(BookingBase, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    requester_id: str = Field(foreign_key="user.id", index=True)
    assigned_to_id: Optional[str] = Field(default=None, foreign_key="user.id")
    status: BookingStatus = Field(default=BookingStatus.REQUESTED, index=True)
    is_block: bool = False
    created_at: NaiveDatetime = Field(default_factory=utcnow)
    updated_at: NaiveDatetime = Field(default_factory=utcnow)

    item: Optional[Item] = Relationship()
    requester: Optional[User] = Relationship(
        sa_relationship_kwargs={"foreign_keys": "[Booking.requester_id]"}
    )
    assigned_to: Optional[User] = Relationship(
        sa_relationship_kwargs={"foreign_keys": "[Booking.assigned_to_id]"}
    )
    notes: List[BookingNote] = Relationship(
        back_populates="booking",
        sa_relationship_kwargs={"order_by": "BookingNote.id"},
    )

    @property
    def latest_note(self) -> Optional[str]:
        return self.notes[-1].body if self.notes else None


def is_admin_block(booking: Booking) -> bool:
    return bool(
        booking.notes
        and booking.notes[0].kind == NoteKind.BLOCK
        and booking.notes[0].body.startswith(ADMIN_BLOCK_PREFIX)
    )


def admin_block_reason(booking: Booking) -> Optional[str]:
    """Return the reason given when the block was created, if any."""
    if not is_admin_block(booking):
        return None
    reason = booking.notes[0].body[len(ADMIN_BLOCK_PREFIX) :].strip()
    return reason or None


class BookingCreate(SQLModel):
    item_id: str
    quantity: int = Field(default=1, ge=1)
    start: datetime
    end: datetime
    notes: Optional[str] = None


class BookingUpdate(SQLModel):
    start: datetime
    end: datetime
    notes: Optional[str] = None


class StatusChange(SQLModel):
    status: BookingStatus
    note: Optional[str] = None


class NoteCreate(SQLModel):
    body: str


class BookingNoteRead(SQLModel):
    author_id: Optional[str] = None
    kind: NoteKind
    body: str
    created_at: datetime

    @field_serializer("created_at")
    def _serialize_created_at(self, value: datetime):
        return isoformat_z(value)


class BookingRead(BookingBase):
    id: str
    start_date: datetime
    end_date: datetime
    requester_id: str
    assigned_to_id: Optional[str] = None
    status: BookingStatus
    is_block: bool
    latest_note: Optional[str] = None
    notes: List[BookingNoteRead] = []
    created_at: datetime
    updated_at: datetime

    @field_serializer("start_date", "end_date", "created_at", "updated_at")
    def _serialize_dates(self, value: datetime):
        return isoformat_z(value)

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingRead":
        return cls(
            id=booking.id,
            item_id=booking.item_id,
            requester_id=booking.requester_id,
            assigned_to_id=booking.assigned_to_id,
            quantity=booking.quantity,
            start_date=booking.start_date,
            end_date=booking.end_date,
            status=booking.status,
            is_block=booking.is_block,
            latest_note=booking.latest_note,
            notes=[BookingNoteRead.model_validate(note, from_attributes=True) for note in booking.notes],
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class AvailabilitySlot(SQLModel):
    id: str
    start_date: datetime
    end_date: datetime
    status: BookingStatus
    quantity: int

    @field_serializer("start_date", "end_date")
    def _serialize_dates(self, value: datetime):
        return isoformat_z(value)


class TeamBookingPage(SQLModel):
    bookings: List[BookingRead]
    next_cursor: Optional[str] = None


#####################
# BLOCKS & RECURRENCE
#####################


class Frequency(str, Enum):
    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class RecurrenceRule(SQLModel):
    frequency: Frequency = Frequency.NONE
    until: Optional[datetime] = None


class BlockCreate(SQLModel):
    start: datetime
    end: datetime
    quantity: Optional[int] = Field(default=None, ge=1)
    reason: Optional[str] = Field(default=None, max_length=500)
    recurrence: Optional[RecurrenceRule] = None


class SkippedRead(SQLModel):
    start: datetime
    end: datetime
    reason: str

    @field_serializer("start", "end")
    def _serialize_dates(self, value: datetime):
        return isoformat_z(value)


class BlockResultRead(SQLModel):
    created_count: int
    skipped_count: int
    skipped: List[SkippedRead] = []
    title: str


###############################
# NOTIFICATIONS & ACTION LOG
###############################


class Notification(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    booking_id: Optional[str] = Field(default=None, foreign_key="booking.id")
    kind: NotificationKind
    message: str
    read: bool = False
    created_at: NaiveDatetime = Field(default_factory=utcnow)


class ActionLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[str] = Field(default=None, foreign_key="user.id")
    booking_id: Optional[str] = Field(default=None, foreign_key="booking.id")
    message: str
    created_at: NaiveDatetime = Field(default_factory=utcnow, index=True)
