# =============================
# app.py — rollcall console (Events, Upload, Check-In, Dashboard)
# Run: streamlit run app.py
# =============================
from __future__ import annotations

import logging
import math
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st
from sqlalchemy.engine import Engine

from rollcall.attendance.manage_attendance import (
    CheckInResult,
    CheckInStatus,
    ScanDebouncer,
    SnapshotGate,
    attendance_summary,
    attendees_frame,
    check_in,
    filter_attendees,
    list_attendees,
)
from rollcall.config import Settings, load_settings
from rollcall.db import assert_db_connects, dsn_caption, init_db, make_engine
from rollcall.errors import RollcallError
from rollcall.events.manage_events import EventSelection, create_event, delete_event, list_events
from rollcall.roster.manage_roster import PreparedRoster, commit_roster, prepare_roster
from rollcall.roster.source import published_csv_url, read_roster
from rollcall.utils import qr
from rollcall.utils.logs import setup_logging

logger = logging.getLogger("rollcall.app")

# ---------------------------------
# Page + constants
# ---------------------------------
st.set_page_config(page_title="Rollcall Check-In", page_icon="🎟️", layout="wide")
st.title("🎟️ Rollcall — Event Check-In")

SELECTION_KEY = "event_selection"
DEBOUNCER_KEY = "scan_debouncer"
SNAPSHOT_KEY = "camera_snapshot"
PREPARED_KEY = "prepared_roster"
LAST_RESULT_KEY = "last_checkin"
QR_PAGE_SIZE = 30


# ---------------------------------
# Resources
# ---------------------------------
@st.cache_resource(show_spinner=False)
def get_settings() -> Settings:
    s = load_settings()
    setup_logging(s.log_level, s.log_file)
    return s


@st.cache_resource(show_spinner=False)
def get_engine() -> Engine:
    engine = make_engine(get_settings().database_url)
    init_db(engine)
    return engine


@st.cache_data(ttl=5, show_spinner=False)
def cached_events(_engine: Engine) -> List[Dict[str, Any]]:
    return list_events(_engine)


def clear_cache():
    st.cache_data.clear()


def selection() -> EventSelection:
    if SELECTION_KEY not in st.session_state:
        st.session_state[SELECTION_KEY] = EventSelection()
    return st.session_state[SELECTION_KEY]


def debouncer() -> ScanDebouncer:
    if DEBOUNCER_KEY not in st.session_state:
        st.session_state[DEBOUNCER_KEY] = ScanDebouncer(get_settings().scan_cooldown)
    return st.session_state[DEBOUNCER_KEY]


def snapshot_gate() -> SnapshotGate:
    if SNAPSHOT_KEY not in st.session_state:
        st.session_state[SNAPSHOT_KEY] = SnapshotGate()
    return st.session_state[SNAPSHOT_KEY]


def flash(kind: str, msg: str) -> None:
    st.session_state["_flash"] = {"kind": kind, "msg": msg}


def show_flash_once():
    f = st.session_state.pop("_flash", None)
    if not f: return
    kind = f.get("kind", "success")
    msg = f.get("msg", "")
    if   kind == "success": st.success(msg)
    elif kind == "warning": st.warning(msg)
    elif kind == "error":   st.error(msg)
    else:                   st.info(msg)


def _fmt_time(v) -> str:
    return v.strftime("%Y-%m-%d %H:%M:%S") if v is not None and hasattr(v, "strftime") else "—"


def render_result(res: CheckInResult) -> None:
    if res.status is CheckInStatus.SUCCESS:
        st.success(res.message)
    elif res.status is CheckInStatus.ALREADY_CHECKED_IN:
        st.warning(res.message)
    elif res.status is CheckInStatus.NOT_FOUND:
        st.error(res.message)
    else:
        st.error(f"{res.message} ({type(res.error).__name__}: {res.error})")
    if res.attendee:
        st.table(pd.DataFrame([res.attendee]).rename(columns=str.title))


# ---------------------------------
# Boot
# ---------------------------------
try:
    settings = get_settings()
    engine = get_engine()
except RollcallError as e:
    st.error(str(e))
    st.stop()
except Exception as e:
    st.error(f"Database not ready: {type(e).__name__}: {e}")
    st.stop()

sel = selection()

show_flash_once()

try:
    events = cached_events(engine)
except Exception as e:
    st.error(f"Failed to load events: {type(e).__name__}: {e}")
    st.stop()

if sel.scope and not any(ev["id"] == sel.scope.event_id for ev in events):
    # selected event was deleted from another session
    sel.clear()
# first visit only; after a delete the operator must pick again
if not st.session_state.get("_auto_selected"):
    sel.auto_select(events)
    st.session_state["_auto_selected"] = True

with st.sidebar:
    section = st.radio("Section", ["Events", "Upload Roster", "Check-In", "Dashboard"], index=0)
    st.caption(dsn_caption(engine))
    if sel.scope:
        st.success(f"Active event: **{sel.scope.event_name}**")
    else:
        st.warning("No event selected")
    if st.button("Refresh"):
        clear_cache()
        st.rerun()


# ---------------------------------
# EVENTS
# ---------------------------------
if section == "Events":
    st.subheader("Create an event")
    with st.form("new_event", clear_on_submit=True):
        name = st.text_input("Event name")
        dt = st.date_input("Event date", value=None)
        desc = st.text_area("Description", height=80)
        submit = st.form_submit_button("Create")
    if submit:
        try:
            ev = create_event(engine, name, str(dt) if dt else "", desc)
            clear_cache()
            flash("success", f'Event "{ev["name"]}" created!')
            st.rerun()
        except RollcallError as e:
            st.warning(str(e))
        except Exception as e:
            st.error(f"Failed to create event: {e}")

    st.divider()
    st.subheader("Events")
    if not events:
        st.info("No events yet. Create one above.")
    for ev in events:
        active = sel.is_selected(ev["id"])
        c1, c2, c3 = st.columns([5, 1, 1])
        with c1:
            badge = " ✅ **Active**" if active else ""
            st.markdown(f"**{ev['name']}**{badge}  \n🕒 {ev['event_date'] or 'No date set'}")
            if ev.get("description"):
                st.caption(ev["description"])
        with c2:
            if st.button("Selected" if active else "Select", key=f"sel_{ev['id']}", disabled=active):
                sel.select(ev["id"], ev["name"])
                flash("info", f"Switched to event: {ev['name']}")
                st.rerun()
        with c3:
            confirm = st.checkbox("Confirm", key=f"confirm_{ev['id']}")
            if st.button("Delete", key=f"del_{ev['id']}", disabled=not confirm):
                try:
                    n = delete_event(engine, ev["id"], selection=sel)
                    clear_cache()
                    flash("success", f'Event "{ev["name"]}" deleted with {n} attendee(s)')
                    st.rerun()
                except Exception as e:
                    st.error(f"Failed to delete event: {e}")

# ---------------------------------
# UPLOAD ROSTER
# ---------------------------------
elif section == "Upload Roster":
    st.subheader("Upload attendee roster")
    st.caption("Required columns (any case): name, prn, email, mobile, year.")
    if sel.scope is None:
        st.warning("Please select an event first from the Events page!")
        st.stop()

    src_kind = st.radio("Source", ["CSV file", "Published Google Sheet"], horizontal=True)
    source = None
    try:
        if src_kind == "CSV file":
            up = st.file_uploader("Roster CSV", type=["csv"])
            if up is not None:
                source = read_roster(up)
        else:
            url = st.text_input("Public CSV URL")
            if url and st.button("Preview"):
                source = read_roster(published_csv_url(url))
    except (RollcallError, ValueError) as e:
        st.error(str(e))
    except Exception as e:
        st.error(f"Error parsing CSV: {e}")

    if source is not None:
        try:
            st.session_state[PREPARED_KEY] = prepare_roster(source)
        except RollcallError as e:
            st.session_state.pop(PREPARED_KEY, None)
            st.error(str(e))

    prepared: Optional[PreparedRoster] = st.session_state.get(PREPARED_KEY)
    if prepared is not None:
        st.success(f"Parsed {len(prepared.rows)} records — QR codes generated.")
        if prepared.duplicates:
            st.warning(f"{len(prepared.duplicates)} repeated PRN row(s) in this file will be skipped.")
        preview = pd.DataFrame([r.as_dict() for r in prepared.rows]).drop(columns=["identifier_payload"])
        preview.index = range(1, len(preview) + 1)
        st.dataframe(preview, use_container_width=True)

        with st.expander("QR codes"):
            pages = max(1, math.ceil(len(prepared.rows) / QR_PAGE_SIZE))
            page = st.number_input("Page", min_value=1, max_value=pages, value=1, step=1) if pages > 1 else 1
            start = (int(page) - 1) * QR_PAGE_SIZE
            cols = st.columns(6)
            for i, row in enumerate(prepared.rows[start:start + QR_PAGE_SIZE]):
                with cols[i % 6]:
                    st.image(qr.render(row.identifier_payload, box_size=4), caption=f"{row.name} ({row.prn})")

        if st.button(f"Upload to {sel.scope.event_name}"):
            bar = st.progress(0, text="Testing database connection...")

            def _progress(done: int, total: int, label: str) -> None:
                bar.progress(done / total if total else 1.0, text=label)

            try:
                report = commit_roster(
                    engine,
                    sel.scope,
                    prepared,
                    probe_timeout=settings.probe_timeout,
                    commit_timeout=settings.commit_timeout,
                    progress=_progress,
                )
            except RollcallError as e:
                bar.empty()
                st.error(str(e))
            else:
                bar.progress(1.0, text="Complete!")
                c1, c2, c3 = st.columns(3)
                c1.metric("Added", report.uploaded)
                c2.metric("Skipped", report.skipped)
                c3.metric("Failed", report.failed)
                (st.warning if report.failed else st.success)(report.as_message())
                for prn, msg in report.failures:
                    st.caption(f"{prn}: {msg}")
                st.session_state.pop(PREPARED_KEY, None)

# ---------------------------------
# CHECK-IN
# ---------------------------------
elif section == "Check-In":
    st.subheader("Scan or enter a PRN")
    if sel.scope is None:
        st.warning("Please select an event first from the Events page!")
        st.stop()

    try:
        assert_db_connects(engine)
    except Exception as e:
        st.error(f"Database connectivity failed: {type(e).__name__}: {e}")
        st.stop()

    c1, c2 = st.columns([1, 1])
    with c1:
        shot = st.camera_input("Point the camera at a QR code")
        if shot is not None and snapshot_gate().is_new(shot.getvalue()):
            code = qr.decode(shot.getvalue())
            if not code:
                st.info("No QR code found in the frame. Try again.")
            elif debouncer().accept(code):
                st.session_state[LAST_RESULT_KEY] = check_in(engine, sel.scope, code, timeout=settings.lookup_timeout)

    with c2:
        with st.form("manual_checkin", clear_on_submit=True):
            prn = st.text_input("PRN")
            go = st.form_submit_button("Check In ✅")
        if go:
            if not prn.strip():
                st.warning("Please enter a PRN")
            else:
                st.session_state[LAST_RESULT_KEY] = check_in(engine, sel.scope, prn, timeout=settings.lookup_timeout)

    res = st.session_state.get(LAST_RESULT_KEY)
    if res is not None:
        st.divider()
        render_result(res)

# ---------------------------------
# DASHBOARD
# ---------------------------------
elif section == "Dashboard":
    if sel.scope is None:
        st.warning("Please select an event first from the Events page!")
        st.stop()

    try:
        rows = list_attendees(engine, sel.scope)
    except Exception as e:
        st.error(f"Failed to load attendees: {type(e).__name__}: {e}")
        st.stop()

    stats = attendance_summary(rows)
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Registered", stats["total"])
    c2.metric("Checked In", stats["checked_in"])
    c3.metric("Pending", stats["pending"])
    c4.metric("Rate", f"{stats['rate']}%")

    f1, f2 = st.columns([1, 2])
    with f1:
        status = st.radio("Show", ["all", "checked-in", "pending"], horizontal=True)
    with f2:
        q = st.text_input("Search name, PRN or email")

    shown = filter_attendees(rows, status, q)
    df = attendees_frame(shown, with_qr=True)
    if df.empty:
        st.info("No attendees match.")
    else:
        df["Check-In Time"] = df["Check-In Time"].map(_fmt_time)
        st.dataframe(
            df,
            use_container_width=True,
            column_config={"QR": st.column_config.ImageColumn("QR", width="small")},
        )
        st.download_button(
            "📥 Download check-in report (CSV)",
            df.drop(columns=["QR"]).to_csv(index_label="#").encode("utf-8"),
            file_name=f"checkin-report-{date.today().isoformat()}.csv",
            mime="text/csv",
        )

        st.subheader("QR code")
        picked = st.selectbox(
            "Attendee",
            range(len(shown)),
            format_func=lambda i: f"{shown[i]['name']} ({shown[i]['prn']})",
        )
        att = shown[picked]
        png = qr.render(att["identifier_payload"] or qr.encode(att["prn"]))
        st.image(png, caption=f"{att['name']} ({att['prn']})", width=240)
        st.download_button(
            "⬇️ Download QR (PNG)",
            png,
            file_name=f"qr-{att['prn']}.png",
            mime="image/png",
        )
