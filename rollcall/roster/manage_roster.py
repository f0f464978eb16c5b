"""
Roster import: validate, normalize, generate QR payloads, then commit row by row.

Rows are committed one at a time with no cross-row transaction, so one bad
row never blocks the rest; every row ends up counted as uploaded, skipped or
failed.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from rollcall.db import SERVER_NOW, run_with_timeout
from rollcall.errors import (
    CommitError,
    ConnectivityError,
    EmptyImportError,
    EventNotFoundError,
    SchemaError,
)
from rollcall.events.manage_events import EventScope, require_scope
from rollcall.roster.source import RosterSource
from rollcall.utils import lower_keys, missing_columns, new_id, norm_text
from rollcall.utils.qr import encode

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("name", "prn", "email", "mobile", "year")

ProgressFn = Callable[[int, int, str], None]


@dataclass(frozen=True)
class RosterRow:
    name: str
    prn: str
    email: str
    mobile: str
    year: str
    identifier_payload: str

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class PreparedRoster:
    rows: List[RosterRow]
    # later rows whose PRN already appeared earlier in the same file
    duplicates: List[RosterRow] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.rows) + len(self.duplicates)


@dataclass
class ImportReport:
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def as_message(self) -> str:
        return f"Upload complete: {self.uploaded} added, {self.skipped} skipped, {self.failed} failed"


# ---------------------------
# Validation / normalization
# ---------------------------
def _norm_row(r: Dict[str, Any]) -> Optional[RosterRow]:
    r = lower_keys(r)
    name = norm_text(r.get("name"))
    prn = norm_text(r.get("prn"))
    if not name or not prn:
        return None
    return RosterRow(
        name=name,
        prn=prn,
        email=norm_text(r.get("email")),
        mobile=norm_text(r.get("mobile")),
        year=norm_text(r.get("year")),
        identifier_payload=encode(prn),
    )


def prepare_roster(source: RosterSource) -> PreparedRoster:
    """
    Check columns, drop blank rows, normalize fields and derive each QR payload.

    Nothing touches the store here, so callers can preview payloads first.
    Raises SchemaError or EmptyImportError.
    """
    missing = missing_columns(source.headers, REQUIRED_COLUMNS)
    if missing:
        raise SchemaError(missing)

    kept: List[RosterRow] = []
    dupes: List[RosterRow] = []
    seen = set()
    for raw in source.rows:
        row = _norm_row(raw)
        if row is None:
            continue
        if row.prn in seen:
            dupes.append(row)
            continue
        seen.add(row.prn)
        kept.append(row)

    if not kept:
        raise EmptyImportError()

    if dupes:
        logger.warning("Dropped %d repeated PRN(s) within the roster: %s", len(dupes), sorted({d.prn for d in dupes}))
    return PreparedRoster(rows=kept, duplicates=dupes)


# ---------------------------
# Store calls
# ---------------------------
def _probe(engine: Engine, event_id: str) -> bool:
    with engine.connect() as c:
        return c.execute(
            text("SELECT id FROM events WHERE id = :eid"), {"eid": event_id}
        ).first() is not None


def _exists(engine: Engine, event_id: str, prn: str) -> bool:
    with engine.connect() as c:
        return c.execute(
            text("SELECT id FROM attendees WHERE event_id = :eid AND prn = :prn LIMIT 1"),
            {"eid": event_id, "prn": prn},
        ).first() is not None


def _insert(engine: Engine, event_id: str, row: RosterRow) -> str:
    attendee_id = new_id("att")
    with engine.begin() as c:
        c.execute(text(f"""
            INSERT INTO attendees (id, event_id, name, prn, email, mobile, year,
                                   identifier_payload, checked_in, check_in_time, created_at)
            VALUES (:id, :event_id, :name, :prn, :email, :mobile, :year,
                    :identifier_payload, :checked_in, NULL, {SERVER_NOW})
        """), {**row.as_dict(), "id": attendee_id, "event_id": event_id, "checked_in": False})
    return attendee_id


# ---------------------------
# Commit
# ---------------------------
def commit_roster(
    engine: Engine,
    scope: Optional[EventScope],
    prepared: PreparedRoster,
    probe_timeout: Optional[float] = 8.0,
    commit_timeout: Optional[float] = 10.0,
    progress: Optional[ProgressFn] = None,
) -> ImportReport:
    """
    Write prepared rows to the selected event.

    A connectivity probe runs first; if it fails the import aborts with
    ConnectivityError and nothing is written. After that, per-row errors and
    timeouts are absorbed into ``failed`` and the loop carries on.
    """
    scope = require_scope(scope)

    try:
        found = run_with_timeout(_probe, probe_timeout, engine, scope.event_id)
    except Exception as e:
        logger.error("Connectivity probe failed: %s: %s", type(e).__name__, e)
        raise ConnectivityError("Cannot reach the database; nothing was imported. Check the connection and retry.") from e
    if not found:
        raise EventNotFoundError(f"Event {scope.event_id} no longer exists")

    report = ImportReport(total=prepared.total, skipped=len(prepared.duplicates))
    total = len(prepared.rows)

    for i, row in enumerate(prepared.rows, start=1):
        if progress:
            progress(i, total, f"Processing {row.name}...")
        try:
            if run_with_timeout(_exists, commit_timeout, engine, scope.event_id, row.prn):
                report.skipped += 1
                continue
            run_with_timeout(_insert, commit_timeout, engine, scope.event_id, row)
            report.uploaded += 1
        except Exception as e:
            err = CommitError(row.prn, e)
            logger.error("%s", err, exc_info=e)
            report.failed += 1
            report.failures.append((row.prn, str(err)))

    logger.info("%s (event %s, %d rows)", report.as_message(), scope.event_id, report.total)
    return report


def import_roster(
    engine: Engine,
    scope: Optional[EventScope],
    source: RosterSource,
    probe_timeout: Optional[float] = 8.0,
    commit_timeout: Optional[float] = 10.0,
    progress: Optional[ProgressFn] = None,
) -> ImportReport:
    scope = require_scope(scope)
    prepared = prepare_roster(source)
    return commit_roster(
        engine,
        scope,
        prepared,
        probe_timeout=probe_timeout,
        commit_timeout=commit_timeout,
        progress=progress,
    )
