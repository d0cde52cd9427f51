import csv
import io
import json
import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from mt_db import Config
from mt_errors import InvalidDuration, ValidationError
from mt_export import export_entries, import_json, import_zeit, write_entries
from mt_store import EntryStore
from mt_tracking import TrackingEngine

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


class TestExportImport(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.store = EntryStore(self.root / "test.db")
        self.engine = TrackingEngine(self.store, config=Config())
        first = self.engine.record("Alpha", "build", T0, T0 + timedelta(minutes=30), notes="a, b")
        self.store.set_entry_metadata(first.id, {"commits": [{"hash": "abcdef1234567"}]})
        self.engine.record("Beta", "docs", T0 + timedelta(hours=1), T0 + timedelta(hours=2))

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_json_export(self):
        output = self.root / "out.json"
        count = export_entries(self.store.list_entries(), "json", str(output))
        self.assertEqual(count, 2)
        records = json.loads(output.read_text(encoding="utf-8"))
        self.assertEqual({r["project"] for r in records}, {"Alpha", "Beta"})
        alpha = next(r for r in records if r["project"] == "Alpha")
        self.assertEqual(alpha["start"], "2024-05-01T09:00:00Z")
        self.assertEqual(alpha["duration_seconds"], 1800)

    def test_csv_export(self):
        buffer = io.StringIO()
        write_entries(self.store.list_entries(), "csv", buffer)
        rows = list(csv.DictReader(io.StringIO(buffer.getvalue())))
        alpha = next(r for r in rows if r["project"] == "Alpha")
        self.assertEqual(alpha["notes"], "a, b")
        self.assertEqual(alpha["git_commits"], "abcdef1")
        self.assertEqual(alpha["duration_seconds"], "1800")

    def test_running_entry_exported_without_end(self):
        self.engine.start("Alpha", "build", now=T0 + timedelta(hours=3))
        buffer = io.StringIO()
        write_entries(self.store.list_entries(), "json", buffer)
        running = [r for r in json.loads(buffer.getvalue()) if r["end"] is None]
        self.assertEqual(len(running), 1)
        self.assertIsNone(running[0]["duration_seconds"])

    def test_unknown_format(self):
        with self.assertRaises(ValidationError):
            write_entries([], "xml", io.StringIO())

    def test_reimport_own_export_is_idempotent(self):
        output = self.root / "out.json"
        export_entries(self.store.list_entries(), "json", str(output))
        result = import_json(output, self.engine, existing=self.store.list_entries())
        self.assertEqual(result.imported, [])
        self.assertEqual(result.duplicates, 2)
        self.assertEqual(self.store.count_entries(), 2)

    def test_import_plain_records(self):
        source = self.root / "in.json"
        source.write_text(
            json.dumps(
                [
                    {"project": "Gamma", "start": "2024-06-01T08:00:00Z", "end": "2024-06-01T09:00:00Z"},
                    {"project": "Gamma", "task": "ops", "start": "2024-06-02T08:00:00Z", "end": None},
                ]
            ),
            encoding="utf-8",
        )
        result = import_json(source, self.engine)
        self.assertEqual(len(result.imported), 1)
        self.assertEqual(result.open_entries, 1)
        entry = result.imported[0]
        self.assertEqual(entry.task_name, "default")
        self.assertEqual(entry.metadata, {"source": "import"})
        self.assertIsNone(self.store.active_entry())

    def test_invalid_records_write_nothing(self):
        source = self.root / "bad.json"
        source.write_text(
            json.dumps(
                [
                    {"project": "Gamma", "start": "2024-06-01T08:00:00Z", "end": "2024-06-01T09:00:00Z"},
                    {"project": "Gamma", "start": "2024-06-01T10:00:00Z", "end": "2024-06-01T09:00:00Z"},
                ]
            ),
            encoding="utf-8",
        )
        with self.assertRaises(InvalidDuration):
            import_json(source, self.engine)
        self.assertIsNone(self.store.get_project_by_name("Gamma"))

        source.write_text("{not json", encoding="utf-8")
        with self.assertRaises(ValidationError):
            import_json(source, self.engine)

    def test_blank_project_name_writes_nothing(self):
        source = self.root / "blank.json"
        source.write_text(
            json.dumps(
                [
                    {"project": "Gamma", "task": "t", "start": "2024-06-01T08:00:00Z", "end": "2024-06-01T09:00:00Z"},
                    {"project": "   ", "task": "t", "start": "2024-06-01T10:00:00Z", "end": "2024-06-01T11:00:00Z"},
                ]
            ),
            encoding="utf-8",
        )
        before = self.store.count_entries()
        with self.assertRaises(ValidationError):
            import_json(source, self.engine)
        self.assertEqual(self.store.count_entries(), before)
        self.assertIsNone(self.store.get_project_by_name("Gamma"))


class TestZeitImport(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.store = EntryStore(self.root / "test.db")
        self.engine = TrackingEngine(self.store, config=Config())
        self.zeit_path = self.root / "zeit.db"
        conn = sqlite3.connect(str(self.zeit_path))
        conn.execute(
            "CREATE TABLE entries (id INTEGER PRIMARY KEY, project TEXT, task TEXT, "
            "start TEXT, finish TEXT, note TEXT)"
        )
        conn.executemany(
            "INSERT INTO entries (project, task, start, finish, note) VALUES (?, ?, ?, ?, ?)",
            [
                ("Client", "call", "2024-01-15T10:30:00+00:00", "2024-01-15T11:00:00+00:00", "kickoff"),
                ("Client", None, "2024-01-15 12:00:00", "2024-01-15 13:15:00", None),
                ("Client", "call", "2024-01-16T09:00:00+00:00", None, None),
                ("", "orphan", "2024-01-16T10:00:00+00:00", "2024-01-16T11:00:00+00:00", None),
            ],
        )
        conn.commit()
        conn.close()

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_import_maps_projects_tasks_and_entries(self):
        result = import_zeit(self.zeit_path, self.engine)
        self.assertEqual(len(result.imported), 2)
        self.assertEqual(result.open_entries, 1)
        call, lunch = sorted(result.imported, key=lambda e: e.start)
        self.assertEqual((call.project_name, call.task_name), ("Client", "call"))
        self.assertEqual(call.start, datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))
        self.assertEqual(call.notes, "kickoff")
        self.assertEqual(call.metadata, {"source": "zeit"})
        self.assertEqual(lunch.task_name, "default")
        self.assertEqual(lunch.duration(), timedelta(minutes=75))
        self.assertIsNone(self.store.active_entry())

    def test_reimport_skips_duplicates(self):
        import_zeit(self.zeit_path, self.engine)
        result = import_zeit(self.zeit_path, self.engine, existing=self.store.list_entries())
        self.assertEqual(result.imported, [])
        self.assertEqual(result.duplicates, 2)
        self.assertEqual(self.store.count_entries(), 2)

    def test_source_is_left_untouched(self):
        before = self.zeit_path.read_bytes()
        import_zeit(self.zeit_path, self.engine)
        self.assertEqual(self.zeit_path.read_bytes(), before)

    def test_not_a_zeit_database(self):
        other = self.root / "other.db"
        conn = sqlite3.connect(str(other))
        conn.execute("CREATE TABLE notes (body TEXT)")
        conn.commit()
        conn.close()
        with self.assertRaises(ValidationError):
            import_zeit(other, self.engine)
        garbage = self.root / "garbage.db"
        garbage.write_bytes(b"not sqlite at all" * 100)
        with self.assertRaises(ValidationError):
            import_zeit(garbage, self.engine)
        with self.assertRaises(ValidationError):
            import_zeit(self.root / "missing.db", self.engine)


if __name__ == "__main__":
    unittest.main()
