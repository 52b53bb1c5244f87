from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from psycopg.errors import UndefinedTable
from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from attendance_core.errors import StoreNotReadyError
from attendance_core.settings import get_settings


class Base(DeclarativeBase):
    pass


engine = create_engine(get_settings().database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)


class SchemaState:
    """Outcome of the startup schema guard, consulted before touching tables."""

    def __init__(self) -> None:
        self.ready: bool | None = None
        self.issues: list[str] = []

    def mark(self, *, ready: bool, issues: list[str] | None = None) -> None:
        self.ready = ready
        self.issues = list(issues or [])

    def ensure_ready(self) -> None:
        if self.ready is False:
            raise StoreNotReadyError("Attendance schema incomplete: " + "; ".join(self.issues))


schema_state = SchemaState()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_undefined_table_error(exc: BaseException) -> bool:
    if isinstance(exc, DBAPIError):
        return isinstance(exc.orig, UndefinedTable)
    return isinstance(exc, UndefinedTable)


@contextmanager
def store_errors() -> Iterator[None]:
    try:
        yield
    except DBAPIError as exc:
        if is_undefined_table_error(exc):
            raise StoreNotReadyError() from exc
        raise


@contextmanager
def optional_read(db: Session) -> Iterator[None]:
    """Savepoint around a read that may degrade on StoreNotReadyError.

    A failed statement only aborts the savepoint, so the enclosing transaction
    stays usable after the caller falls back.
    """
    with db.begin_nested():
        with store_errors():
            yield


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run one logical operation as a single transaction.

    Commits on success, rolls back on any exception and re-raises it.
    """
    schema_state.ensure_ready()
    try:
        with store_errors():
            yield db
            db.commit()
    except BaseException:
        db.rollback()
        raise
