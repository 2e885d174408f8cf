from typing import Optional

from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from .config import settings
from .models import Item

DATABASE_URL = settings.database_url
if not DATABASE_URL or DATABASE_URL == "":
    raise ValueError("DATABASE_URL not set")


def _take_sqlite_write_lock(engine):
    # pysqlite defers BEGIN until the first write, so a capacity read would run
    # outside any lock. Take over transaction control and start every
    # transaction with BEGIN IMMEDIATE, which holds SQLite's write lock.
    @event.listens_for(engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str, echo: bool = False, **kwargs):
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(url, echo=echo, **kwargs)
    if is_sqlite:
        _take_sqlite_write_lock(engine)
    return engine


engine = make_engine(DATABASE_URL, echo=settings.database_echo)


def create_db_and_tables(bind=None):
    SQLModel.metadata.create_all(bind or engine)


def get_session():
    with Session(engine) as session:
        yield session


def lock_item(session: Session, item_id: str) -> Optional[Item]:
    """Load an item and hold a row lock on it until the transaction ends.

    Every booking write for the item takes this lock before reading the
    committed quantity, so concurrent writers for the same item serialize.
    SQLite has no row locks; engines from ``make_engine`` open each
    transaction with ``BEGIN IMMEDIATE`` instead, which serializes writers
    for the whole database. A writer that cannot get the lock within the
    busy timeout fails with ``OperationalError`` and the caller retries.
    """
    return session.exec(select(Item).where(Item.id == item_id).with_for_update()).first()
