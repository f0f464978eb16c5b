import pytest
from sqlalchemy import event as sa_event

from rollcall.db import init_db, make_engine
from rollcall.events.manage_events import EventScope, create_event
from rollcall.roster.source import RosterSource

HEADERS = ["name", "prn", "email", "mobile", "year"]


def make_source(rows, headers=None):
    return RosterSource.from_records(rows, headers=headers or HEADERS)


def person(name, prn, year="FE"):
    return {
        "name": name,
        "prn": prn,
        "email": f"{name.lower()}@x.com",
        "mobile": "1",
        "year": year,
    }


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'rollcall.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def event(engine):
    return create_event(engine, "Orientation", "2026-08-01", "FE intake")


@pytest.fixture
def scope(event):
    return EventScope(event["id"], event["name"])


@pytest.fixture
def statements(engine):
    """Every SQL statement the engine runs after this fixture is set up."""
    seen = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        seen.append(" ".join(statement.split()).upper())

    sa_event.listen(engine, "before_cursor_execute", _record)
    yield seen
    sa_event.remove(engine, "before_cursor_execute", _record)


def writes(statements):
    return [s for s in statements if s.startswith(("INSERT", "UPDATE", "DELETE"))]
