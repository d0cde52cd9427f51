import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from mt_db import (
    SCHEMA_VERSION,
    call_with_retry,
    get_setting,
    init_database,
    load_config,
    set_setting,
    transaction,
    validate_setting,
)
from mt_errors import ConfigError, StoreBusy


class TestSettings(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmpdir.name) / "test.db"
        init_database(self.db_path)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_defaults(self):
        config = load_config(self.db_path)
        self.assertTrue(config.auto_create)
        self.assertFalse(config.auto_import_git)
        self.assertEqual(config.week_start, "monday")
        self.assertEqual(config.busy_retries, 5)
        with transaction(self.db_path) as conn:
            self.assertEqual(conn.execute("PRAGMA user_version").fetchone()[0], SCHEMA_VERSION)

    def test_init_is_idempotent(self):
        set_setting("week_start", "sunday", self.db_path)
        init_database(self.db_path)
        self.assertEqual(get_setting("week_start", self.db_path), "sunday")

    def test_set_normalizes(self):
        set_setting("auto_import_git", "yes", self.db_path)
        set_setting("busy_backoff", "0.5", self.db_path)
        config = load_config(self.db_path)
        self.assertTrue(config.auto_import_git)
        self.assertEqual(config.busy_backoff, 0.5)

    def test_invalid_values(self):
        for key, value in [
            ("auto_create", "maybe"),
            ("busy_retries", "-1"),
            ("busy_retries", "many"),
            ("week_start", "friday"),
            ("week_start", None),
            ("no_such_key", "1"),
        ]:
            with self.subTest(key=key, value=value):
                with self.assertRaises(ConfigError):
                    validate_setting(key, value)
        self.assertIsNone(validate_setting("notes_path", None))


class TestRetry(unittest.TestCase):
    def test_retries_then_succeeds(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        with mock.patch("mt_db.time.sleep") as sleep:
            self.assertEqual(call_with_retry(flaky, retries=5, backoff=0.01), "ok")
        self.assertEqual(len(calls), 3)
        self.assertEqual(sleep.call_count, 2)

    def test_gives_up_with_store_busy(self):
        def locked():
            raise sqlite3.OperationalError("database is locked")

        with mock.patch("mt_db.time.sleep"):
            with self.assertRaises(StoreBusy) as ctx:
                call_with_retry(locked, retries=2, backoff=0.01)
        self.assertEqual(ctx.exception.attempts, 3)

    def test_other_errors_propagate(self):
        def broken():
            raise sqlite3.OperationalError("no such table: nope")

        with self.assertRaises(sqlite3.OperationalError):
            call_with_retry(broken)


if __name__ == "__main__":
    unittest.main()
