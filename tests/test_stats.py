import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import mock

from mt_models import TimeEntry
from mt_stats import compute_report, daily_totals, group_by, total_duration, window_bounds

UTC = timezone.utc
T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=UTC)
PROJECT_IDS = {"P1": 1, "P2": 2}


def make_entry(entry_id, project, task, start, minutes=None):
    end = start + timedelta(minutes=minutes) if minutes is not None else None
    return TimeEntry(
        id=entry_id,
        project_id=PROJECT_IDS.get(project, 9),
        task_id=entry_id,
        start=start,
        end=end,
        project_name=project,
        task_name=task,
    )


class TestTotals(unittest.TestCase):
    def setUp(self):
        self.entries = [
            make_entry(1, "P1", "T1", T0, 30),
            make_entry(2, "P1", "T2", T0 + timedelta(hours=1), 15),
            make_entry(3, "P2", "T1", T0 + timedelta(hours=2), 45),
        ]

    def test_total_is_sum_of_durations(self):
        expected = sum((e.duration() for e in self.entries), timedelta(0))
        self.assertEqual(total_duration(self.entries), expected)

    def test_total_grows_by_new_entry(self):
        before = total_duration(self.entries)
        extra = make_entry(4, "P2", "T3", T0 + timedelta(hours=5), 20)
        self.assertEqual(total_duration(self.entries + [extra]) - before, timedelta(minutes=20))

    def test_active_entry_excluded_unless_requested(self):
        running = make_entry(5, "P1", "T1", T0 + timedelta(hours=6))
        now = T0 + timedelta(hours=6, minutes=10)
        self.assertEqual(total_duration([running]), timedelta(0))
        self.assertEqual(
            total_duration([running], now=now, include_active=True), timedelta(minutes=10)
        )

    def test_group_by_project_tie_broken_by_name(self):
        groups = group_by(self.entries, key="project")
        self.assertEqual(list(groups), ["P1", "P2"])
        self.assertEqual(groups["P1"].duration, timedelta(minutes=45))
        self.assertEqual(groups["P1"].count, 2)
        self.assertEqual(groups["P2"].duration, timedelta(minutes=45))
        self.assertEqual(groups["P2"].count, 1)

    def test_group_by_task_orders_by_duration(self):
        groups = group_by(self.entries, key="task")
        self.assertEqual(list(groups), ["P2 > T1", "P1 > T1", "P1 > T2"])

    def test_group_by_rejects_unknown_key(self):
        with self.assertRaises(ValueError):
            group_by(self.entries, key="colour")

    def test_report_percentages(self):
        report = compute_report(self.entries)
        self.assertEqual(report.total_seconds, 90 * 60)
        self.assertEqual(report.entry_count, 3)
        p1 = report.projects[0]
        self.assertEqual(p1.name, "P1")
        self.assertAlmostEqual(p1.percentage, 50.0)
        self.assertEqual([t.name for t in p1.tasks], ["T1", "T2"])
        self.assertAlmostEqual(p1.tasks[0].percentage, 200 / 3)
        self.assertEqual(report.to_dict()["projects"][1]["name"], "P2")

    def test_report_reads_clock_once(self):
        running = make_entry(7, "P1", "T3", T0 + timedelta(hours=3))
        ticks = iter(T0 + timedelta(hours=4, seconds=s) for s in range(100))
        with mock.patch("mt_stats.utc_now", side_effect=lambda: next(ticks)) as clock:
            report = compute_report(self.entries + [running], include_active=True)
        self.assertEqual(clock.call_count, 1)
        p1 = report.projects[0]
        self.assertEqual(p1.seconds, sum(t.seconds for t in p1.tasks))
        self.assertEqual(report.total_seconds, 90 * 60 + 3600)

    def test_daily_totals_newest_first(self):
        entries = self.entries + [make_entry(6, "P1", "T1", T0 - timedelta(days=1), 60)]
        days = daily_totals(entries, tz=UTC)
        self.assertEqual(days, [(date(2024, 5, 1), 90 * 60), (date(2024, 4, 30), 3600)])


class TestWindows(unittest.TestCase):
    def test_today(self):
        start, end = window_bounds("today", T0, tz=UTC)
        self.assertEqual(start, datetime(2024, 5, 1, tzinfo=UTC))
        self.assertEqual(end, datetime(2024, 5, 2, tzinfo=UTC))

    def test_week_monday_and_sunday(self):
        # 2024-05-01 is a Wednesday.
        start, end = window_bounds("week", T0, week_start="monday", tz=UTC)
        self.assertEqual(start, datetime(2024, 4, 29, tzinfo=UTC))
        self.assertEqual(end, datetime(2024, 5, 6, tzinfo=UTC))
        start, _ = window_bounds("week", T0, week_start="sunday", tz=UTC)
        self.assertEqual(start, datetime(2024, 4, 28, tzinfo=UTC))

    def test_month_and_year(self):
        start, end = window_bounds("month", T0, tz=UTC)
        self.assertEqual((start, end), (datetime(2024, 5, 1, tzinfo=UTC), datetime(2024, 6, 1, tzinfo=UTC)))
        start, end = window_bounds("year", T0, tz=UTC)
        self.assertEqual((start, end), (datetime(2024, 1, 1, tzinfo=UTC), datetime(2025, 1, 1, tzinfo=UTC)))

    def test_local_zone_shifts_day(self):
        plus2 = timezone(timedelta(hours=2))
        late = datetime(2024, 5, 1, 23, 30, tzinfo=UTC)
        start, _ = window_bounds("today", late, tz=plus2)
        self.assertEqual(start, datetime(2024, 5, 1, 22, 0, tzinfo=UTC))

    def test_unknown_period(self):
        with self.assertRaises(ValueError):
            window_bounds("decade", T0)


if __name__ == "__main__":
    unittest.main()
