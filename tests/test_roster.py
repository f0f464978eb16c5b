import io
import time

import pytest
from sqlalchemy import text

from conftest import HEADERS, make_source, person, writes
from rollcall.attendance.manage_attendance import list_attendees
from rollcall.errors import (
    ConnectivityError,
    EmptyImportError,
    EventNotFoundError,
    NoEventSelectedError,
    SchemaError,
)
from rollcall.events.manage_events import EventScope, create_event
from rollcall.roster import manage_roster
from rollcall.roster.manage_roster import commit_roster, import_roster, prepare_roster
from rollcall.roster.source import published_csv_url, read_roster


def _count(engine, event_id=None):
    sql = "SELECT COUNT(*) FROM attendees"
    params = {}
    if event_id:
        sql += " WHERE event_id = :eid"
        params["eid"] = event_id
    with engine.connect() as c:
        return c.execute(text(sql), params).scalar()


class TestPrepare:
    def test_missing_columns_named_in_order(self):
        src = make_source([{"name": "A", "prn": "1", "email": "a@x.com"}], headers=["name", "prn", "email"])
        with pytest.raises(SchemaError) as exc:
            prepare_roster(src)
        assert exc.value.missing == ["mobile", "year"]

    def test_columns_are_case_insensitive_and_fields_trimmed(self):
        src = make_source(
            [{"Name": "  Asha ", "PRN": " 007 ", "EMAIL": "a@x.com ", "Mobile": 98765, "Year": " SE"}],
            headers=["Name", "PRN", "EMAIL", "Mobile", "Year"],
        )
        prepared = prepare_roster(src)
        row = prepared.rows[0]
        assert (row.name, row.prn, row.email, row.mobile, row.year) == ("Asha", "007", "a@x.com", "98765", "SE")

    def test_rows_without_name_or_prn_are_dropped(self):
        src = make_source([person("A", "1"), {"name": "", "prn": "2"}, {"name": "C", "prn": "  "}, {}])
        prepared = prepare_roster(src)
        assert [r.prn for r in prepared.rows] == ["1"]
        assert prepared.total == 1

    def test_nan_lookalike_text_is_real_data(self):
        csv = "name,prn,email,mobile,year\nNan,42,nan@x.com,1,FE\nAsha,NaN,a@x.com,2,SE\n"
        prepared = prepare_roster(read_roster(io.StringIO(csv)))
        assert [(r.name, r.prn) for r in prepared.rows] == [("Nan", "42"), ("Asha", "NaN")]
        assert prepared.rows[1].identifier_payload == "NaN"

    def test_missing_float_cells_count_as_blank(self):
        prepared = prepare_roster(make_source([person("A", "1"), {"name": float("nan"), "prn": "2"}]))
        assert [r.prn for r in prepared.rows] == ["1"]

    def test_no_usable_rows(self):
        with pytest.raises(EmptyImportError):
            prepare_roster(make_source([{"name": "", "prn": ""}]))

    def test_payload_is_derived_from_prn_only(self):
        a = prepare_roster(make_source([person("A", "PRN-1", year="FE")])).rows[0]
        b = prepare_roster(make_source([person("Zed", "PRN-1", year="BE")])).rows[0]
        assert a.identifier_payload == b.identifier_payload == "PRN-1"

    def test_repeated_prn_in_one_file_keeps_first(self):
        prepared = prepare_roster(make_source([person("A", "1"), person("B", "1"), person("C", "2")]))
        assert [r.name for r in prepared.rows] == ["A", "C"]
        assert [r.name for r in prepared.duplicates] == ["B"]
        assert prepared.total == 3


class TestCommit:
    def test_clean_import(self, engine, scope):
        report = import_roster(engine, scope, make_source([person("A", "1"), person("B", "2")]))

        assert (report.uploaded, report.skipped, report.failed, report.total) == (2, 0, 0, 2)
        rows = list_attendees(engine, scope)
        assert sorted(r["prn"] for r in rows) == ["1", "2"]
        for r in rows:
            assert r["checked_in"] is False
            assert r["check_in_time"] is None
            assert r["created_at"] is not None
            assert r["identifier_payload"] == r["prn"]
            assert r["event_id"] == scope.event_id

    def test_attendee_named_nan_is_imported(self, engine, scope):
        report = import_roster(engine, scope, make_source([person("Nan", "NaN")]))
        assert (report.uploaded, report.total) == (1, 1)
        assert [(r["name"], r["prn"]) for r in list_attendees(engine, scope)] == [("Nan", "NaN")]

    def test_duplicate_import_is_skipped(self, engine, scope):
        src = make_source([person("A", "1"), person("B", "2")])
        import_roster(engine, scope, src)
        report = import_roster(engine, scope, src)

        assert (report.uploaded, report.skipped, report.failed) == (0, 2, 0)
        assert _count(engine) == 2

    def test_repeated_prn_in_batch_uploads_once(self, engine, scope):
        report = import_roster(engine, scope, make_source([person("A", "1"), person("A2", "1")]))
        assert (report.uploaded, report.skipped, report.failed, report.total) == (1, 1, 0, 2)
        assert _count(engine) == 1

    def test_same_prn_in_another_event_is_separate(self, engine, scope):
        other = create_event(engine, "Hackathon")
        other_scope = EventScope(other["id"], other["name"])
        src = make_source([person("A", "1")])

        assert import_roster(engine, scope, src).uploaded == 1
        assert import_roster(engine, other_scope, src).uploaded == 1
        assert _count(engine, scope.event_id) == 1
        assert _count(engine, other["id"]) == 1

    def test_schema_error_persists_nothing(self, engine, scope):
        src = make_source([{"name": "A", "prn": "1", "email": "a@x.com"}], headers=["name", "prn", "email"])
        with pytest.raises(SchemaError):
            import_roster(engine, scope, src)
        assert _count(engine) == 0

    def test_requires_selected_event(self, engine):
        src = make_source([person("A", "1")])
        with pytest.raises(NoEventSelectedError):
            import_roster(engine, None, src)
        with pytest.raises(NoEventSelectedError):
            import_roster(engine, EventScope(""), src)
        assert _count(engine) == 0

    def test_probe_failure_aborts_with_zero_writes(self, engine, scope, statements, monkeypatch):
        def _down(*args):
            raise OSError("network unreachable")

        monkeypatch.setattr(manage_roster, "_probe", _down)
        prepared = prepare_roster(make_source([person("A", "1")]))
        with pytest.raises(ConnectivityError):
            commit_roster(engine, scope, prepared)
        assert writes(statements) == []
        assert _count(engine) == 0

    def test_probe_timeout_aborts(self, engine, scope, monkeypatch):
        def _slow(*args):
            time.sleep(0.5)
            return True

        monkeypatch.setattr(manage_roster, "_probe", _slow)
        prepared = prepare_roster(make_source([person("A", "1")]))
        with pytest.raises(ConnectivityError):
            commit_roster(engine, scope, prepared, probe_timeout=0.05)
        time.sleep(0.5)
        assert _count(engine) == 0

    def test_deleted_event_is_rejected(self, engine):
        prepared = prepare_roster(make_source([person("A", "1")]))
        with pytest.raises(EventNotFoundError):
            commit_roster(engine, EventScope("evt_missing", "Gone"), prepared)
        assert _count(engine) == 0

    def test_row_failure_is_counted_and_import_continues(self, engine, scope, monkeypatch):
        real_insert = manage_roster._insert

        def _flaky(engine, event_id, row):
            if row.prn == "2":
                raise RuntimeError("write rejected")
            return real_insert(engine, event_id, row)

        monkeypatch.setattr(manage_roster, "_insert", _flaky)
        report = import_roster(engine, scope, make_source([person("A", "1"), person("B", "2"), person("C", "3")]))

        assert (report.uploaded, report.skipped, report.failed) == (2, 0, 1)
        assert report.failures[0][0] == "2"
        assert "write rejected" in report.failures[0][1]
        assert sorted(r["prn"] for r in list_attendees(engine, scope)) == ["1", "3"]

    def test_row_timeout_counts_as_failed(self, engine, scope, monkeypatch):
        def _hung(*args):
            time.sleep(0.3)
            return False

        monkeypatch.setattr(manage_roster, "_exists", _hung)
        report = import_roster(engine, scope, make_source([person("A", "1")]), commit_timeout=0.05)
        assert (report.uploaded, report.skipped, report.failed) == (0, 0, 1)

    def test_accounting_adds_up(self, engine, scope, monkeypatch):
        import_roster(engine, scope, make_source([person("A", "1")]))
        real_insert = manage_roster._insert

        def _flaky(engine, event_id, row):
            if row.prn == "3":
                raise RuntimeError("boom")
            return real_insert(engine, event_id, row)

        monkeypatch.setattr(manage_roster, "_insert", _flaky)
        report = import_roster(
            engine,
            scope,
            make_source([person("A", "1"), person("B", "2"), person("C", "3"), person("B2", "2"), {"name": "", "prn": ""}]),
        )
        assert report.total == 4
        assert report.uploaded + report.skipped + report.failed == report.total
        assert (report.uploaded, report.skipped, report.failed) == (1, 2, 1)

    def test_progress_reports_each_row(self, engine, scope):
        calls = []
        import_roster(
            engine,
            scope,
            make_source([person("A", "1"), person("B", "2")]),
            progress=lambda done, total, label: calls.append((done, total, label)),
        )
        assert calls == [(1, 2, "Processing A..."), (2, 2, "Processing B...")]

    def test_report_message(self, engine, scope):
        report = import_roster(engine, scope, make_source([person("A", "1")]))
        assert report.as_message() == "Upload complete: 1 added, 0 skipped, 0 failed"


class TestSource:
    def test_read_roster_keeps_text(self):
        csv = "Name,PRN,Email,Mobile,Year\nAsha,007,a@x.com,0987,FE\nNA,NA,,,\n"
        src = read_roster(io.StringIO(csv))
        assert src.headers == HEADERS
        assert src.rows[0]["prn"] == "007"
        assert src.rows[0]["mobile"] == "0987"
        assert src.rows[1]["name"] == "NA"
        assert src.rows[1]["email"] == ""

    def test_read_roster_then_prepare(self):
        csv = "name,prn,email,mobile,year\nA,1,a@x.com,1,FE\n,,,,\nB,2,b@x.com,2,SE\n"
        prepared = prepare_roster(read_roster(io.StringIO(csv)))
        assert [r.prn for r in prepared.rows] == ["1", "2"]

    def test_empty_file(self):
        with pytest.raises(EmptyImportError):
            read_roster(io.StringIO(""))

    def test_header_only_file_has_no_rows(self):
        src = read_roster(io.StringIO("name,prn,email,mobile,year\n"))
        with pytest.raises(EmptyImportError):
            prepare_roster(src)

    @pytest.mark.parametrize("url,expected", [
        ("https://docs.google.com/spreadsheets/d/e/KEY/pubhtml",
         "https://docs.google.com/spreadsheets/d/e/KEY/pub?output=csv"),
        ("https://docs.google.com/spreadsheets/d/e/KEY/pub?gid=0",
         "https://docs.google.com/spreadsheets/d/e/KEY/pub?gid=0&output=csv"),
        ("https://docs.google.com/spreadsheets/d/e/KEY/pub?output=csv",
         "https://docs.google.com/spreadsheets/d/e/KEY/pub?output=csv"),
        ("https://example.com/roster", "https://example.com/roster?output=csv"),
    ])
    def test_published_csv_url(self, url, expected):
        assert published_csv_url(url) == expected

    def test_published_csv_url_rejects_blank(self):
        with pytest.raises(ValueError):
            published_csv_url("  ")
