"""
Check-in: resolve a scanned/typed PRN within the selected event and flip
``checked_in`` exactly once.

The flip is a single guarded UPDATE (``... WHERE checked_in = FALSE``), so when
two scans race only one sees a row count of 1; the other reports
ALREADY_CHECKED_IN with the winner's timestamp.
"""
from __future__ import annotations

import enum
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd
from sqlalchemy import text
from sqlalchemy.engine import Engine

from rollcall.db import ATTENDEE_TYPES, SERVER_NOW, run_with_timeout
from rollcall.errors import StoreTimeout
from rollcall.events.manage_events import EventScope, require_scope
from rollcall.utils import norm_text, qr

logger = logging.getLogger(__name__)

DISPLAY_FIELDS = ("name", "prn", "email", "mobile", "year")

ATTENDEE_COLUMNS = """
    id, event_id, name, prn, email, mobile, year, identifier_payload,
    checked_in, check_in_time, created_at
"""


class CheckInStatus(str, enum.Enum):
    SUCCESS = "success"
    ALREADY_CHECKED_IN = "already"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class CheckInResult:
    status: CheckInStatus
    identifier: str
    attendee: Optional[Dict[str, Any]] = None
    check_in_time: Optional[datetime] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status is CheckInStatus.SUCCESS

    @property
    def message(self) -> str:
        name = (self.attendee or {}).get("name") or self.identifier
        if self.status is CheckInStatus.SUCCESS:
            return f"{name} checked in successfully!"
        if self.status is CheckInStatus.ALREADY_CHECKED_IN:
            when = self.check_in_time.strftime("%Y-%m-%d %H:%M:%S") if self.check_in_time else "unknown time"
            return f"{name} is already checked in (at {when})."
        if self.status is CheckInStatus.NOT_FOUND:
            return f"No registration found for {self.identifier!r} in this event."
        return "Error during check-in. Please try again."


def _display(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: row.get(k) for k in DISPLAY_FIELDS}


# ---------------------------
# Store calls
# ---------------------------
def _lookup(engine: Engine, event_id: str, prn: str) -> Optional[Dict[str, Any]]:
    # (event_id, prn) is unique; if it ever isn't, the first match wins
    sql = text(f"""
        SELECT {ATTENDEE_COLUMNS}
        FROM attendees
        WHERE event_id = :eid AND prn = :prn
        LIMIT 1
    """).columns(**ATTENDEE_TYPES)
    with engine.connect() as c:
        row = c.execute(sql, {"eid": event_id, "prn": prn}).mappings().first()
    return dict(row) if row else None


def _mark_checked_in(
    engine: Engine, attendee_id: str, deadline: Optional[float] = None
) -> Tuple[bool, Optional[datetime]]:
    """
    Guarded flip. Returns (won, check_in_time as stored after the statement).

    With a ``deadline`` (``time.monotonic()`` value) the transaction rolls back
    instead of committing once the caller has given up waiting, so a check-in
    reported as ERROR is not applied behind the operator's back.
    """
    with engine.begin() as c:
        if deadline is not None and engine.dialect.name == "postgresql":
            ms = max(1, int((deadline - time.monotonic()) * 1000))
            c.execute(text(f"SET LOCAL statement_timeout = {ms}"))
        res = c.execute(text(f"""
            UPDATE attendees
               SET checked_in = :yes, check_in_time = {SERVER_NOW}
             WHERE id = :id AND checked_in = :no
        """), {"id": attendee_id, "yes": True, "no": False})
        won = res.rowcount == 1
        when = c.execute(
            text("SELECT check_in_time FROM attendees WHERE id = :id").columns(**ATTENDEE_TYPES),
            {"id": attendee_id},
        ).scalar()
        if deadline is not None and time.monotonic() >= deadline:
            raise StoreTimeout()
    return won, when


def _resolve(engine: Engine, event_id: str, prn: str, deadline: Optional[float] = None) -> CheckInResult:
    row = _lookup(engine, event_id, prn)
    if row is None:
        return CheckInResult(CheckInStatus.NOT_FOUND, prn)

    if row["checked_in"]:
        return CheckInResult(
            CheckInStatus.ALREADY_CHECKED_IN, prn, attendee=_display(row), check_in_time=row["check_in_time"]
        )

    won, when = _mark_checked_in(engine, row["id"], deadline=deadline)
    status = CheckInStatus.SUCCESS if won else CheckInStatus.ALREADY_CHECKED_IN
    return CheckInResult(status, prn, attendee=_display(row), check_in_time=when)


def check_in(
    engine: Engine,
    scope: Optional[EventScope],
    identifier: str,
    timeout: Optional[float] = 10.0,
) -> CheckInResult:
    """
    Resolve ``identifier`` to an attendee of the selected event and check them in.

    Raises NoEventSelectedError before touching the store when no event is
    selected. Store failures and timeouts come back as status ERROR, never
    as NOT_FOUND. Nothing is retried here.

    A timed-out check-in is rolled back: the update transaction checks the
    same deadline before committing, so ERROR means the attendee is still
    pending and a retry can succeed.
    """
    scope = require_scope(scope)
    prn = norm_text(identifier)
    if not prn:
        return CheckInResult(CheckInStatus.NOT_FOUND, prn)

    try:
        deadline = time.monotonic() + timeout if timeout is not None else None
        result = run_with_timeout(_resolve, timeout, engine, scope.event_id, prn, deadline=deadline)
    except Exception as e:
        logger.exception("Check-in error for %r (event %s)", prn, scope.event_id)
        return CheckInResult(CheckInStatus.ERROR, prn, error=e)

    logger.info("Check-in %s: %r (event %s)", result.status.value, prn, scope.event_id)
    return result


# ---------------------------
# Scanner input
# ---------------------------
class ScanDebouncer:
    """
    Coalesce repeated scans of the same code from a camera feed.

    ``accept(code)`` is True the first time a code is seen and again once
    ``cooldown`` seconds have passed since it was last accepted.
    """

    def __init__(self, cooldown: float = 3.0, clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self._clock = clock
        self._accepted: Dict[str, float] = {}

    def accept(self, code: Optional[str]) -> bool:
        code = norm_text(code)
        if not code:
            return False
        now = self._clock()
        self._accepted = {k: t for k, t in self._accepted.items() if now - t < self.cooldown}
        if code in self._accepted:
            return False
        self._accepted[code] = now
        return True

    def reset(self) -> None:
        self._accepted.clear()


class SnapshotGate:
    """
    Remembers the last camera snapshot handed to the resolver.

    ``st.camera_input`` returns the same frame on every rerun until a new
    photo is taken; only a changed frame is let through.
    """

    def __init__(self):
        self._last: Optional[str] = None

    def is_new(self, frame: Optional[bytes]) -> bool:
        if not frame:
            return False
        digest = hashlib.sha1(frame).hexdigest()
        if digest == self._last:
            return False
        self._last = digest
        return True


# ---------------------------
# Dashboard / reporting
# ---------------------------
def list_attendees(engine: Engine, scope: Optional[EventScope]) -> List[Dict[str, Any]]:
    """Attendees of the selected event, newest first."""
    scope = require_scope(scope)
    sql = text(f"""
        SELECT {ATTENDEE_COLUMNS}
        FROM attendees
        WHERE event_id = :eid
        ORDER BY created_at DESC
    """).columns(**ATTENDEE_TYPES)
    with engine.connect() as c:
        rows = c.execute(sql, {"eid": scope.event_id}).mappings().all()
    return [dict(r) for r in rows]


def attendance_summary(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    total = len(rows)
    checked_in = sum(1 for r in rows if r.get("checked_in"))
    rate = int(checked_in * 100 / total + 0.5) if total else 0
    return {"total": total, "checked_in": checked_in, "pending": total - checked_in, "rate": rate}


def filter_attendees(rows: List[Dict[str, Any]], status: str = "all", query: str = "") -> List[Dict[str, Any]]:
    """status: all | checked-in | pending; query matches name, PRN or email."""
    q = (query or "").strip().lower()
    out = []
    for r in rows:
        if status == "checked-in" and not r.get("checked_in"):
            continue
        if status == "pending" and r.get("checked_in"):
            continue
        if q:
            haystack = f"{r.get('name', '')} {r.get('prn', '')} {r.get('email', '')}".lower()
            if q not in haystack:
                continue
        out.append(r)
    return out


def attendees_frame(rows: List[Dict[str, Any]], with_qr: bool = False) -> pd.DataFrame:
    """
    Table used for display and the check-in report CSV.

    ``with_qr`` adds a "QR" column of PNG data URLs for on-screen thumbnails;
    leave it off for the CSV export.
    """
    cols = ["Name", "PRN", "Email", "Mobile", "Year", "Status", "Check-In Time"]
    if with_qr:
        cols.append("QR")
    if not rows:
        return pd.DataFrame(columns=cols)
    records = []
    for r in rows:
        rec = {
            "Name": r.get("name", ""),
            "PRN": r.get("prn", ""),
            "Email": r.get("email", ""),
            "Mobile": r.get("mobile", ""),
            "Year": r.get("year", ""),
            "Status": "Checked In" if r.get("checked_in") else "Pending",
            "Check-In Time": r.get("check_in_time"),
        }
        if with_qr:
            rec["QR"] = qr.render_data_url(r.get("identifier_payload") or qr.encode(r.get("prn", "")), box_size=3)
        records.append(rec)
    df = pd.DataFrame(records, columns=cols)
    df.index = range(1, len(df) + 1)
    return df
