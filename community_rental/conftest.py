from datetime import datetime, timedelta

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from .lifecycle import BookingService
from .models import Item, ItemCategory, User
from .roles import Role

MONDAY = datetime(2030, 1, 7)
NOW = MONDAY.replace(hour=8)


def at(hour: int, days: int = 0, minute: int = 0) -> datetime:
    """A time on the test week, counted from Monday 2030-01-07 00:00 UTC."""
    return MONDAY + timedelta(days=days, hours=hour, minutes=minute)


class FixedClock:
    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.status_calls = []
        self.request_calls = []

    def notify(self, recipients, booking_id, status, item_title, start, end, notes, actor_name=None):
        self.status_calls.append(
            {
                "recipients": [r.id for r in recipients],
                "booking_id": booking_id,
                "status": status,
                "item_title": item_title,
                "notes": notes,
                "actor_name": actor_name,
            }
        )

    def notify_request(self, recipients, booking_id, item_title, requester_name):
        self.request_calls.append(
            {
                "recipients": [r.id for r in recipients],
                "booking_id": booking_id,
                "item_title": item_title,
                "requester_name": requester_name,
            }
        )


class BrokenNotifier:
    def notify(self, *args, **kwargs):
        raise RuntimeError("push service down")

    def notify_request(self, *args, **kwargs):
        raise RuntimeError("push service down")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def users(session):
    people = {
        "alice": User(username="alice", email="alice@example.com", name="Alice", role=Role.USER),
        "bob": User(username="bob", email="bob@example.com", name="Bob", role=Role.USER),
        "rita": User(username="rita", email="rita@example.com", name="Rita", role=Role.RENTAL),
        "ralf": User(username="ralf", email="ralf@example.com", role=Role.RENTAL),
        "ada": User(username="ada", email="ada@example.com", name="Ada", role=Role.ADMIN),
    }
    session.add_all(people.values())
    session.commit()
    return people


@pytest.fixture
def items(session, users):
    inventory = {
        "room": Item(title="Party room", category=ItemCategory.ROOM, total_quantity=1),
        "rackets": Item(
            title="Badminton rackets",
            category=ItemCategory.SPORTS,
            total_quantity=3,
            responsible_members=[users["rita"]],
        ),
        "chess": Item(title="Chess set", category=ItemCategory.GAME, total_quantity=2, active=False),
    }
    session.add_all(inventory.values())
    session.commit()
    return inventory


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(session, notifier, clock):
    return BookingService(session, notifier=notifier, clock=clock)
