import unittest
from datetime import datetime, timedelta, timezone

from mt_errors import InvalidTimeExpression
from mt_timeexpr import parse_absolute, parse_offset, resolve

UTC = timezone.utc
PLUS2 = timezone(timedelta(hours=2))


class TestRelativeForms(unittest.TestCase):
    def setUp(self):
        self.ref = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

    def test_clock_offset_minus_fifteen(self):
        self.assertEqual(resolve("-0:15", self.ref), self.ref - timedelta(minutes=15))

    def test_clock_offset_with_seconds(self):
        self.assertEqual(
            resolve("+1:30:05", self.ref), self.ref + timedelta(hours=1, minutes=30, seconds=5)
        )

    def test_zero_offset_is_reference(self):
        self.assertEqual(resolve("-0:00", self.ref), self.ref)

    def test_unit_offsets(self):
        self.assertEqual(resolve("-15m", self.ref), self.ref - timedelta(minutes=15))
        self.assertEqual(resolve("-2h", self.ref), self.ref - timedelta(hours=2))
        self.assertEqual(resolve("+1d", self.ref), self.ref + timedelta(days=1))
        self.assertEqual(resolve("-90s", self.ref), self.ref - timedelta(seconds=90))
        self.assertEqual(resolve("-1w", self.ref), self.ref - timedelta(weeks=1))

    def test_bare_signed_number_is_minutes(self):
        self.assertEqual(resolve("-15", self.ref), self.ref - timedelta(minutes=15))

    def test_now_keyword(self):
        self.assertEqual(resolve("  NOW ", self.ref), self.ref)

    def test_result_is_utc(self):
        result = resolve("-0:15", self.ref.astimezone(PLUS2))
        self.assertEqual(result.tzinfo, UTC)
        self.assertEqual(result, self.ref - timedelta(minutes=15))

    def test_parse_offset_returns_none_for_absolute(self):
        self.assertIsNone(parse_offset("2024-05-01"))
        self.assertIsNone(parse_offset("9:30"))
        self.assertEqual(parse_offset("-0:15"), timedelta(minutes=-15))


class TestLocalForms(unittest.TestCase):
    def setUp(self):
        # 14:00 local in a +02:00 zone.
        self.ref = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

    def test_today_is_local_midnight(self):
        self.assertEqual(
            resolve("today", self.ref, tz=PLUS2), datetime(2024, 4, 30, 22, 0, tzinfo=UTC)
        )

    def test_yesterday(self):
        self.assertEqual(
            resolve("yesterday", self.ref, tz=PLUS2), datetime(2024, 4, 29, 22, 0, tzinfo=UTC)
        )

    def test_clock_time_earlier_today(self):
        self.assertEqual(
            resolve("9:30", self.ref, tz=PLUS2), datetime(2024, 5, 1, 7, 30, tzinfo=UTC)
        )

    def test_clock_time_in_future_moves_to_previous_day(self):
        self.assertEqual(
            resolve("23:15:10", self.ref, tz=PLUS2), datetime(2024, 4, 30, 21, 15, 10, tzinfo=UTC)
        )


class TestAbsoluteForms(unittest.TestCase):
    def test_iso_with_z_ignores_reference(self):
        expected = datetime(2024, 5, 1, 9, 30, tzinfo=UTC)
        for ref in (datetime(2020, 1, 1, tzinfo=UTC), datetime(2030, 6, 1, tzinfo=UTC)):
            self.assertEqual(resolve("2024-05-01T09:30:00Z", ref), expected)

    def test_iso_with_offset(self):
        self.assertEqual(
            resolve("2024-05-01T09:30:00+02:00"), datetime(2024, 5, 1, 7, 30, tzinfo=UTC)
        )

    def test_naive_is_local(self):
        self.assertEqual(
            resolve("2024-05-01 09:30", tz=PLUS2), datetime(2024, 5, 1, 7, 30, tzinfo=UTC)
        )

    def test_bare_date_is_local_midnight(self):
        self.assertEqual(resolve("2024-05-01", tz=PLUS2), datetime(2024, 4, 30, 22, 0, tzinfo=UTC))

    def test_parse_absolute_rejects_relative(self):
        with self.assertRaises(InvalidTimeExpression):
            parse_absolute("-0:15")


class TestInvalidExpressions(unittest.TestCase):
    def test_errors_keep_original_string(self):
        ref = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        for expr in ["", "   ", "-0:75", "-5y", "-", "+abc", "yesterdayish", "25:00", "2024-13-01", "-1:2:99"]:
            with self.subTest(expr=expr):
                with self.assertRaises(InvalidTimeExpression) as ctx:
                    resolve(expr, ref)
                self.assertEqual(ctx.exception.expression, expr)

    def test_out_of_range_offsets(self):
        ref = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        for expr in ["-99999999999d", "-99999999:00", "+9999999w", "+99999999999999999999h"]:
            with self.subTest(expr=expr):
                with self.assertRaises(InvalidTimeExpression) as ctx:
                    resolve(expr, ref)
                self.assertEqual(ctx.exception.expression, expr)
                self.assertIn("out of range", str(ctx.exception))

    def test_out_of_range_absolute(self):
        with self.assertRaises(InvalidTimeExpression):
            parse_absolute("0001-01-01T00:00:00+05:00")


if __name__ == "__main__":
    unittest.main()
