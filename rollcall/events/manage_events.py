"""
Event scope: the one active event every import and check-in runs against.

Events are created and deleted by the operator. Deleting an event removes its
attendees first and then the event row. That cascade is best-effort, not a
transaction: if the attendee delete succeeds and the event delete fails, the
event survives with no attendees and the error is raised to the caller.
Re-running the delete finishes the job.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from rollcall.db import EVENT_TYPES, SERVER_NOW
from rollcall.errors import EventNotFoundError, NoEventSelectedError, ValidationError
from rollcall.utils import new_id, norm_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventScope:
    event_id: str
    event_name: str = ""


def require_scope(scope: Optional[EventScope]) -> EventScope:
    """Guard used before any store access by the importer and resolver."""
    if scope is None or not (scope.event_id or "").strip():
        raise NoEventSelectedError()
    return scope


class EventSelection:
    """In-memory holder for the currently selected event. Selecting never writes to the store."""

    def __init__(self, scope: Optional[EventScope] = None):
        self._scope = scope

    @property
    def scope(self) -> Optional[EventScope]:
        return self._scope

    def select(self, event_id: str, event_name: str = "") -> EventScope:
        self._scope = EventScope(event_id=event_id, event_name=event_name)
        logger.info("Switched to event: %s", event_name or event_id)
        return self._scope

    def clear(self) -> None:
        self._scope = None

    def is_selected(self, event_id: str) -> bool:
        return self._scope is not None and self._scope.event_id == event_id

    def auto_select(self, events: List[Dict[str, Any]]) -> Optional[EventScope]:
        """Select the first (newest) event when nothing is selected yet."""
        if self._scope is None and events:
            first = events[0]
            self.select(first["id"], first["name"])
        return self._scope


# ---------------------------
# Store operations
# ---------------------------
def create_event(engine: Engine, name: str, date: str = "", description: str = "") -> Dict[str, Any]:
    name = norm_text(name)
    if not name:
        raise ValidationError("Please enter an event name")

    payload = {
        "id": new_id("evt"),
        "name": name,
        "event_date": norm_text(date),
        "description": norm_text(description),
    }
    with engine.begin() as c:
        c.execute(text(f"""
            INSERT INTO events (id, name, event_date, description, created_at)
            VALUES (:id, :name, :event_date, :description, {SERVER_NOW})
        """), payload)
    logger.info("Created event %r (id %s)", payload["name"], payload["id"])
    return get_event(engine, payload["id"])


def get_event(engine: Engine, event_id: str) -> Dict[str, Any]:
    sql = text("""
        SELECT id, name, event_date, description, created_at
        FROM events
        WHERE id = :id
    """).columns(**EVENT_TYPES)
    with engine.connect() as c:
        row = c.execute(sql, {"id": event_id}).mappings().first()
    if not row:
        raise EventNotFoundError(f"Event {event_id} not found")
    return dict(row)


def list_events(engine: Engine) -> List[Dict[str, Any]]:
    """All events, newest first."""
    sql = text("""
        SELECT id, name, event_date, description, created_at
        FROM events
        ORDER BY created_at DESC
    """).columns(**EVENT_TYPES)
    with engine.connect() as c:
        rows = c.execute(sql).mappings().all()
    return [dict(r) for r in rows]


def delete_event(engine: Engine, event_id: str, selection: Optional[EventSelection] = None) -> int:
    """
    Delete an event and all of its attendees; return how many attendees were removed.

    Steps: collect attendee ids, batch-delete them, delete the event. Each
    step commits on its own (see module docstring for the failure window).
    The selection is cleared only after the event row is gone.
    """
    get_event(engine, event_id)

    with engine.connect() as c:
        ids = c.execute(
            text("SELECT id FROM attendees WHERE event_id = :eid"), {"eid": event_id}
        ).scalars().all()

    if ids:
        stmt = text("DELETE FROM attendees WHERE id IN :ids").bindparams(bindparam("ids", expanding=True))
        with engine.begin() as c:
            c.execute(stmt, {"ids": list(ids)})

    with engine.begin() as c:
        c.execute(text("DELETE FROM events WHERE id = :eid"), {"eid": event_id})

    if selection is not None and selection.is_selected(event_id):
        selection.clear()

    logger.info("Deleted event %s with %d attendee(s)", event_id, len(ids))
    return len(ids)
