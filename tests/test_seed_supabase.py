"""Tests for the Supabase seeder (no network: the client is faked)."""

from __future__ import annotations

import json
import pytest
from datetime import date, datetime
from pathlib import Path

from attendance_analytics import (
    Course,
    Student,
    StudentAttendanceStats,
    generate_alerts,
    run_pipeline,
)
from seed_supabase import (
    REQUIRED_FILES,
    load_json,
    main,
    missing_files,
    parse_args,
    seed_database,
    transform_alerts,
    transform_devices,
    transform_events,
    upsert_batch,
)


class FakeQuery:
    def __init__(self, table, records):
        self.table = table
        self.records = records

    def execute(self):
        if self.table.fail_on_batches and len(self.records) > 1:
            raise RuntimeError("batch rejected")
        if any(r.get("id") in self.table.bad_ids for r in self.records):
            raise RuntimeError("bad record")
        self.table.calls.append(list(self.records))
        return self


class FakeTable:
    def __init__(self, fail_on_batches=False, bad_ids=()):
        self.calls: list[list[dict]] = []
        self.fail_on_batches = fail_on_batches
        self.bad_ids = set(bad_ids)

    def upsert(self, records):
        return FakeQuery(self, records)


class FakeClient:
    def __init__(self, **table_kwargs):
        self.tables: dict[str, FakeTable] = {}
        self.table_kwargs = table_kwargs

    def table(self, name):
        if name not in self.tables:
            self.tables[name] = FakeTable(**self.table_kwargs)
        return self.tables[name]


@pytest.fixture
def exported(tmp_path) -> Path:
    roster = [Student(f"S{i}", f"Student {i}", "MET", "Bachelor", 1.0 + i * 0.3) for i in range(8)]
    catalogue = [Course("C1", "Management", "MET", "Bachelor", capacity=30)]
    result = run_pipeline(
        roster, catalogue, 21, seed=3,
        as_of=date(2025, 3, 3), now=datetime(2025, 3, 3, 18, 0),
    )
    result.to_json(str(tmp_path))
    return tmp_path


class TestTransforms:
    def test_events_match_model_rows(self, exported):
        rows = load_json(exported / "events.json")
        transformed = transform_events(rows)
        assert len(transformed) == len(rows)
        first = transformed[0]
        assert first["student_id"] == rows[0]["studentId"]
        assert first["occurred_on"] == rows[0]["occurredOn"]
        assert isinstance(first["verified_by_instructor"], bool)

    def test_sensor_rows_keep_device(self, exported):
        rows = transform_events(load_json(exported / "events.json"))
        for r in rows:
            assert (r["source"] == "sensor") == (r["device_id"] is not None)

    def test_alerts_match_model_rows(self):
        stats = [
            StudentAttendanceStats("S1", "Low", "MET", "Bachelor", 10, attendance_rate=35.0),
            StudentAttendanceStats("S2", "Mid", "MET", "Bachelor", 10, attendance_rate=65.0),
        ]
        alerts = generate_alerts(stats, datetime(2025, 3, 3, 18, 0))
        rows = transform_alerts([a.to_row() for a in alerts])
        assert rows == [a.to_supabase_row() for a in alerts]
        assert all(r["acknowledged"] is False for r in rows)

    def test_devices(self, exported):
        rows = transform_devices(load_json(exported / "devices.json"))
        assert len(rows) == 8
        assert {"id", "location", "status", "last_sync", "sessions_today", "accuracy"} == set(rows[0])


class TestLoadJson:
    def test_list(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text(json.dumps([{"id": 1}, {"id": 2}]))
        assert len(load_json(path)) == 2

    def test_single_object_wrapped(self, tmp_path):
        path = tmp_path / "b.json"
        path.write_text(json.dumps({"id": 1}))
        assert load_json(path) == [{"id": 1}]


class TestMissingFiles:
    def test_all_missing(self, tmp_path):
        assert missing_files(tmp_path) == REQUIRED_FILES

    def test_none_missing(self, exported):
        assert missing_files(exported) == []


class TestUpsertBatch:
    def test_batches(self):
        client = FakeClient()
        records = [{"id": str(i)} for i in range(250)]
        assert upsert_batch(client, "attendance_events", records) == 250
        assert [len(c) for c in client.tables["attendance_events"].calls] == [100, 100, 50]

    def test_failed_batch_retried_per_record(self):
        client = FakeClient(fail_on_batches=True, bad_ids={"3"})
        records = [{"id": str(i)} for i in range(5)]
        assert upsert_batch(client, "attendance_alerts", records) == 4

    def test_seed_database_order(self, exported):
        client = FakeClient()
        results = seed_database(client, exported)
        assert list(results) == ["devices", "attendance_events", "attendance_alerts"]
        assert results["devices"] == 8
        events = json.loads((exported / "events.json").read_text())
        assert results["attendance_events"] == len(events)


class TestMain:
    def test_dry_run_exits_cleanly(self, exported, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--dry-run", "--data-dir", str(exported)])
        assert exc.value.code == 0
        assert "Nothing was written" in capsys.readouterr().out

    def test_missing_credentials(self, exported, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_KEY", raising=False)
        monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
        with pytest.raises(SystemExit) as exc:
            main(["--data-dir", str(exported)])
        assert exc.value.code == 1

    def test_missing_export_files(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main(["--url", "https://example.supabase.co", "--key", "k" * 20, "--data-dir", str(tmp_path)])
        assert exc.value.code == 1


class TestParseArgs:
    def test_service_role_key_fallback(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_KEY", raising=False)
        monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-role-secret")
        assert parse_args([]).key == "service-role-secret"

    def test_supabase_key_wins(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_KEY", "primary")
        monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-role-secret")
        assert parse_args([]).key == "primary"

    def test_help_documents_fallback(self, capsys):
        with pytest.raises(SystemExit):
            parse_args(["--help"])
        assert "SUPABASE_SERVICE_ROLE_KEY" in capsys.readouterr().out
