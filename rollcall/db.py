# db.py — SQLAlchemy engine, schema and store helpers for rollcall
# Works with psycopg2 or psycopg (v3) in production; SQLite in tests.
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    MetaData,
    Table,
    Text,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from rollcall.errors import StoreTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Server-assigned timestamp; valid on Postgres and SQLite.
SERVER_NOW = "CURRENT_TIMESTAMP"

# ---------------------------
# Schema
# ---------------------------
metadata = MetaData()

events = Table(
    "events",
    metadata,
    Column("id", Text, primary_key=True),
    Column("name", Text, nullable=False),
    Column("event_date", Text, nullable=False, server_default=""),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=text(SERVER_NOW)),
)

attendees = Table(
    "attendees",
    metadata,
    Column("id", Text, primary_key=True),
    Column("event_id", Text, ForeignKey("events.id"), nullable=False),
    Column("name", Text, nullable=False),
    Column("prn", Text, nullable=False),
    Column("email", Text, nullable=False, server_default=""),
    Column("mobile", Text, nullable=False, server_default=""),
    Column("year", Text, nullable=False, server_default=""),
    Column("identifier_payload", Text, nullable=False),
    Column("checked_in", Boolean, nullable=False, server_default=text("FALSE")),
    Column("check_in_time", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=text(SERVER_NOW)),
    Index("ix_attendees_event_prn", "event_id", "prn", unique=True),
    Index("ix_attendees_event_id", "event_id"),
)

# Result types for text() queries, so SQLite hands back datetimes/bools too.
ATTENDEE_TYPES = {
    "checked_in": Boolean,
    "check_in_time": DateTime(timezone=True),
    "created_at": DateTime(timezone=True),
}
EVENT_TYPES = {"created_at": DateTime(timezone=True)}


# ---------------------------
# Engine
# ---------------------------
def make_engine(url: str) -> Engine:
    connect_args = {}
    if make_url(url).get_backend_name() == "sqlite":
        # store calls run on timeout worker threads
        connect_args["check_same_thread"] = False
    return create_engine(
        url,
        pool_pre_ping=True,   # drop dead connections automatically
        pool_recycle=300,     # recycle every 5 minutes (helps on serverless)
        future=True,
        connect_args=connect_args,
    )


def init_db(engine: Engine) -> None:
    """Create tables and indexes if they do not exist (idempotent)."""
    metadata.create_all(engine)


def assert_db_connects(engine: Engine) -> bool:
    try:
        with engine.connect() as c:
            c.execute(text("SELECT 1")).scalar_one()
        return True
    except Exception:
        logger.exception("DB connectivity check failed")
        raise


def dsn_caption(engine: Engine) -> str:
    try:
        u = engine.url
        return f"DB → host={u.host or '<none>'} db={u.database or '<none>'} user={u.username or '<none>'}"
    except Exception as e:
        return f"DB → (unavailable: {type(e).__name__})"


# ---------------------------
# Timeouts
# ---------------------------
def run_with_timeout(fn: Callable[..., T], timeout: Optional[float], *args: Any, **kwargs: Any) -> T:
    """
    Run one store call, giving up after ``timeout`` seconds with StoreTimeout.

    The call runs on a worker thread; on timeout the thread is abandoned
    (not cancelled) and its result discarded. No retries here.
    """
    if timeout is None:
        return fn(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rollcall-store")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeout:
        if future.done():
            raise
        raise StoreTimeout(timeout) from None
    finally:
        executor.shutdown(wait=False)
