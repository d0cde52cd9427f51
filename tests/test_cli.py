import io
import json
import logging
import sqlite3
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

from mt_cli import join_time_options, main
from mt_errors import EXIT_ERROR, EXIT_OK, EXIT_STORE, EXIT_VALIDATION


class TestCli(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.db_path = self.root / "mtrack.db"

    def tearDown(self):
        for handler in logging.root.handlers[:]:
            logging.root.removeHandler(handler)
            handler.close()
        self.tmpdir.cleanup()

    def run_cli(self, *args):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(["--db", str(self.db_path), *args])
        return code, out.getvalue(), err.getvalue()

    def test_track_status_finish(self):
        code, out, _ = self.run_cli("track", "-p", "Alpha", "-t", "build", "--begin", "-0:10")
        self.assertEqual(code, EXIT_OK)
        self.assertIn("Started tracking Alpha -> build", out)

        code, out, _ = self.run_cli("status", "--format", "json")
        payload = json.loads(out)
        self.assertTrue(payload["tracking"])
        self.assertGreaterEqual(payload["elapsed_seconds"], 600)

        code, out, _ = self.run_cli("f", "-n", "done")
        self.assertEqual(code, EXIT_OK)
        self.assertIn("Finished Alpha -> build", out)

        code, out, _ = self.run_cli("s")
        self.assertEqual(out.strip(), "Not tracking")
        self.assertTrue((self.root / "mtrack.log").exists())

    def test_exit_codes(self):
        code, _, err = self.run_cli("finish")
        self.assertEqual(code, EXIT_ERROR)
        self.assertTrue(err.startswith("Error:"))

        self.run_cli("t", "-p", "Alpha", "-t", "build")
        code, _, err = self.run_cli("track", "-p", "Beta", "-t", "docs")
        self.assertEqual(code, EXIT_ERROR)
        self.assertIn("Already tracking", err)

        code, _, err = self.run_cli("finish", "--end", "-0:75")
        self.assertEqual(code, EXIT_VALIDATION)
        self.assertIn("-0:75", err)

        code, _, _ = self.run_cli("config", "set", "week_start", "friday")
        self.assertEqual(code, EXIT_VALIDATION)

    def test_corrupt_database_is_store_error(self):
        self.db_path.write_bytes(b"this is not a database" * 100)
        code, _, err = self.run_cli("status")
        self.assertEqual(code, EXIT_STORE)
        self.assertIn("Error:", err)

    def test_projects_and_tasks(self):
        self.assertEqual(self.run_cli("project", "add", "Alpha", "--color", "#ff0000")[0], EXIT_OK)
        self.assertEqual(self.run_cli("task", "add", "build", "-p", "Alpha")[0], EXIT_OK)
        code, out, _ = self.run_cli("list", "--only-projects-and-tasks")
        self.assertEqual(out.splitlines(), ["Alpha", "  - build"])

        self.run_cli("track", "-p", "Alpha", "-t", "build", "--begin", "-1:00")
        self.run_cli("finish")
        code, _, err = self.run_cli("project", "remove", "Alpha")
        self.assertEqual(code, EXIT_VALIDATION)
        self.assertIn("--force", err)
        code, _, _ = self.run_cli("project", "remove", "Alpha", "--force")
        self.assertEqual(code, EXIT_OK)
        code, out, _ = self.run_cli("list", "--format", "json")
        self.assertEqual(json.loads(out)["entries"], [])

    def test_list_and_stats(self):
        self.run_cli("track", "-p", "Alpha", "-t", "build", "--begin", "-0:30")
        self.run_cli("finish", "-t", "review", "--end", "-0:10")
        self.run_cli("finish")

        code, out, _ = self.run_cli("list", "--format", "json", "--total")
        payload = json.loads(out)
        self.assertEqual([e["task_name"] for e in payload["entries"]], ["review", "build"])
        self.assertEqual(payload["entries"][0]["start"], payload["entries"][1]["end"])

        code, out, _ = self.run_cli("stats", "--since", "-1h", "--by-task", "--format", "json")
        self.assertEqual(code, EXIT_OK)
        report = json.loads(out)
        self.assertEqual(report["entry_count"], 2)
        self.assertEqual(report["projects"][0]["name"], "Alpha")
        self.assertEqual(report["projects"][0]["tasks"][0]["name"], "build")

        code, out, _ = self.run_cli("stats", "--today", "--daily")
        self.assertEqual(code, EXIT_OK)
        self.assertTrue(out.startswith("Today:"))

    def test_statusbar(self):
        code, out, _ = self.run_cli("statusbar")
        self.assertEqual(out.strip(), "💎 idle")
        self.run_cli("config", "set", "statusbar_icon", "*")
        self.run_cli("track", "-p", "Alpha", "-t", "build")
        code, out, _ = self.run_cli("statusbar", "--short")
        self.assertEqual(out.strip(), "* Alpha 0m")

    def test_negative_time_values_reach_the_resolver(self):
        code, _, err = self.run_cli("track", "-p", "Alpha", "-t", "build", "--begin", "-15m")
        self.assertEqual(code, EXIT_OK, err)
        code, out, _ = self.run_cli("finish", "--end", "-5m")
        self.assertEqual(code, EXIT_OK)
        code, out, _ = self.run_cli("list", "--since", "-2h", "--until", "+1h", "--format", "json")
        entries = json.loads(out)["entries"]
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]["task_name"], "build")
        code, _, err = self.run_cli("stats", "--since", "-99999999:00")
        self.assertEqual(code, EXIT_VALIDATION)
        self.assertIn("out of range", err)

    def test_join_time_options(self):
        self.assertEqual(
            join_time_options(["track", "-p", "P", "--begin", "-0:10", "--since=-1h", "--end"]),
            ["track", "-p", "P", "--begin=-0:10", "--since=-1h", "--end"],
        )

    def test_import_zeit(self):
        zeit_path = self.root / "zeit.db"
        conn = sqlite3.connect(str(zeit_path))
        conn.execute("CREATE TABLE entries (project TEXT, task TEXT, start TEXT, finish TEXT, note TEXT)")
        conn.execute(
            "INSERT INTO entries VALUES ('Client', 'call', '2024-01-15T10:30:00+00:00', "
            "'2024-01-15T11:00:00+00:00', NULL)"
        )
        conn.commit()
        conn.close()
        code, out, _ = self.run_cli("import", "--zeit", str(zeit_path))
        self.assertEqual(code, EXIT_OK)
        self.assertIn("Imported 1 entries", out)
        code, out, _ = self.run_cli("import", "--zeit", str(zeit_path))
        self.assertIn("1 already present", out)

    def test_export_import_and_cancel(self):
        self.run_cli("track", "-p", "Alpha", "-t", "build", "--begin", "-0:30")
        self.run_cli("finish")
        export_path = self.root / "out.json"
        code, out, _ = self.run_cli("export", "--output", str(export_path))
        self.assertEqual(code, EXIT_OK)
        self.assertEqual(len(json.loads(export_path.read_text(encoding="utf-8"))), 1)

        code, out, _ = self.run_cli("import", "--json", str(export_path))
        self.assertIn("Imported 0 entries", out)

        self.run_cli("track", "-p", "Alpha", "-t", "build")
        code, out, _ = self.run_cli("cancel")
        self.assertEqual(code, EXIT_OK)
        code, out, _ = self.run_cli("list", "--format", "json")
        self.assertEqual(len(json.loads(out)["entries"]), 1)

    def test_notes_need_vault(self):
        code, _, err = self.run_cli("notes", "export")
        self.assertEqual(code, EXIT_VALIDATION)
        self.assertIn("notes_path", err)
        vault = self.root / "vault"
        code, out, _ = self.run_cli("notes", "export", "--vault", str(vault))
        self.assertEqual(code, EXIT_OK)

    def test_config_and_backup(self):
        code, out, _ = self.run_cli("config", "get", "week_start")
        self.assertEqual(out.strip(), "monday")
        self.run_cli("config", "set", "week_start", "Sunday")
        code, out, _ = self.run_cli("config", "get", "week_start")
        self.assertEqual(out.strip(), "sunday")

        code, out, _ = self.run_cli("db", "backup", "--dir", str(self.root / "bk"))
        self.assertEqual(code, EXIT_OK)
        self.assertEqual(len(list((self.root / "bk").glob("mtrack-*.db"))), 1)


if __name__ == "__main__":
    unittest.main()
