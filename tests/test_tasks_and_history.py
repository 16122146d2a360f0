from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import DailyPresence, Person, TaskSegment, TaskTemplate  # noqa: E402
from generator.history import build_history  # noqa: E402
from policy import _normalize_policy, format_minutes, parse_time_label  # noqa: E402
from roles import fills_open_role, role_matches, role_shortfall  # noqa: E402
from tasks import (  # noqa: E402
    daily_task_demand,
    generate_shifts_for_task,
    peak_task_demand,
    required_role_ids,
    segment_active_on,
)

MONDAY = datetime.date(2024, 4, 1)


def _task(*segments, **extra) -> TaskTemplate:
    task = TaskTemplate(id="task-1", organization_id="org", name="Guard", **extra)
    for segment in segments:
        task.segments.append(segment)
    return task


def _segment(segment_id="seg-1", **values) -> TaskSegment:
    payload = {
        "frequency": "daily",
        "days_of_week": "",
        "start_time": "08:00",
        "duration_hours": 8.0,
        "required_people": 1,
        "role_compositionJSON": "[]",
        "is_repeat": False,
    }
    payload.update(values)
    return TaskSegment(id=segment_id, task_id="task-1", **payload)


class SegmentActivityTests(unittest.TestCase):
    def test_weekly_segment_only_on_listed_days(self) -> None:
        segment = _segment(frequency="weekly", days_of_week="monday,Thursday")
        task = _task(segment)
        self.assertTrue(segment_active_on(task, segment, MONDAY))
        self.assertFalse(segment_active_on(task, segment, MONDAY + datetime.timedelta(days=1)))
        self.assertTrue(segment_active_on(task, segment, MONDAY + datetime.timedelta(days=3)))

    def test_specific_date_segment(self) -> None:
        segment = _segment(frequency="specific_date", specific_date=MONDAY + datetime.timedelta(days=2))
        task = _task(segment)
        self.assertFalse(segment_active_on(task, segment, MONDAY))
        self.assertTrue(segment_active_on(task, segment, MONDAY + datetime.timedelta(days=2)))

    def test_task_validity_window(self) -> None:
        segment = _segment()
        task = _task(segment, start_date=MONDAY + datetime.timedelta(days=1))
        self.assertFalse(segment_active_on(task, segment, MONDAY))

    def test_demand_sums_required_people(self) -> None:
        task = _task(
            _segment("a", required_people=2),
            _segment("b", frequency="weekly", days_of_week="tuesday", required_people=3),
        )
        self.assertEqual(daily_task_demand([task], MONDAY), 2)
        self.assertEqual(daily_task_demand([task], MONDAY + datetime.timedelta(days=1)), 5)
        days = [MONDAY + datetime.timedelta(days=offset) for offset in range(7)]
        self.assertEqual(peak_task_demand([task], days), 5)


class ShiftGenerationTests(unittest.TestCase):
    def test_fixed_segments_expand_per_day(self) -> None:
        task = _task(_segment(start_time="22:00", duration_hours=10, required_people=2,
                              role_compositionJSON='[{"roleId": "medic", "count": 1}]', min_rest_hours_after=12))
        shifts = generate_shifts_for_task(task, MONDAY, days=3)
        self.assertEqual(len(shifts), 3)
        first = shifts[0]
        self.assertEqual(first["start"], datetime.datetime(2024, 4, 1, 22, 0))
        self.assertEqual(first["end"], datetime.datetime(2024, 4, 2, 8, 0))
        self.assertEqual(first["required_people"], 2)
        self.assertEqual(first["min_rest_hours"], 12)
        self.assertEqual(required_role_ids(first["role_composition"]), ["medic"])

    def test_repeating_segment_chains_from_anchor(self) -> None:
        anchor = MONDAY - datetime.timedelta(days=1)
        task = _task(_segment(start_time="06:00", duration_hours=8, is_repeat=True), start_date=anchor)
        shifts = generate_shifts_for_task(task, MONDAY, days=1)
        starts = [shift["start"] for shift in shifts]
        self.assertEqual(
            starts,
            [
                datetime.datetime(2024, 3, 31, 22, 0),
                datetime.datetime(2024, 4, 1, 6, 0),
                datetime.datetime(2024, 4, 1, 14, 0),
                datetime.datetime(2024, 4, 1, 22, 0),
            ],
        )

    def test_zero_duration_segments_are_skipped(self) -> None:
        task = _task(_segment(duration_hours=0))
        self.assertEqual(generate_shifts_for_task(task, MONDAY, days=2), [])


class HistoryTests(unittest.TestCase):
    def _row(self, person_id: str, offset: int, status: str) -> DailyPresence:
        return DailyPresence(organization_id="org", person_id=person_id,
                             date=MONDAY + datetime.timedelta(days=offset), status=status)

    def test_counts_trailing_streak(self) -> None:
        rows = [
            self._row("p-1", -1, "base"),
            self._row("p-1", -2, "arrival"),
            self._row("p-1", -3, "home"),
            self._row("p-2", -1, "departure"),
            self._row("p-2", -2, "home"),
        ]
        history = build_history(rows, MONDAY)
        self.assertEqual(history["p-1"].last_status, "base")
        self.assertEqual(history["p-1"].consecutive_days, 2)
        self.assertEqual(history["p-2"].last_status, "home")
        self.assertEqual(history["p-2"].consecutive_days, 2)

    def test_stale_history_is_dropped(self) -> None:
        history = build_history([self._row("p-1", -5, "base")], MONDAY, max_gap_days=3)
        self.assertEqual(history, {})

    def test_gap_in_rows_ends_streak(self) -> None:
        rows = [self._row("p-1", -1, "base"), self._row("p-1", -3, "base")]
        self.assertEqual(build_history(rows, MONDAY)["p-1"].consecutive_days, 1)

    def test_unrecognized_status_is_skipped_and_logged(self) -> None:
        rows = [
            self._row("p-1", -1, "base"),
            self._row("p-1", -2, "on course"),
            self._row("p-1", -3, "base"),
            self._row("p-2", -1, "???"),
        ]
        with self.assertLogs("generator.history", level="WARNING") as captured:
            history = build_history(rows, MONDAY)
        self.assertEqual(history["p-1"].last_status, "base")
        self.assertEqual(history["p-1"].consecutive_days, 1)
        self.assertNotIn("p-2", history)
        self.assertEqual(len(captured.records), 2)
        self.assertIn("on course", captured.output[0])


class PolicyTests(unittest.TestCase):
    def test_normalization_clamps_and_defaults(self) -> None:
        policy = _normalize_policy(
            {"optimization_mode": "Fancy", "default_days_on": 0, "min_daily_staff": -2,
             "arrival_hour": "09:15:00", "departure_hour": "late", "engine_version": "LEGACY"}
        )
        self.assertEqual(policy["optimization_mode"], "ratio")
        self.assertEqual(policy["default_days_on"], 1)
        self.assertEqual(policy["min_daily_staff"], 0)
        self.assertEqual(policy["arrival_hour"], "09:15")
        self.assertEqual(policy["departure_hour"], "14:00")
        self.assertEqual(policy["engine_version"], "legacy")

    def test_time_helpers(self) -> None:
        self.assertEqual(parse_time_label("07:45"), 465)
        self.assertIsNone(parse_time_label("noon"))
        self.assertEqual(format_minutes(465), "07:45")


class RoleTests(unittest.TestCase):
    def _person(self, person_id: str, roles: str) -> Person:
        return Person(id=person_id, organization_id="org", full_name=person_id, roles=roles)

    def test_specialised_role_satisfies_base_role(self) -> None:
        self.assertTrue(role_matches("Medic - Senior", "medic"))
        self.assertFalse(role_matches("Medic", "Medic - Senior"))
        self.assertFalse(role_matches("Driver", "medic"))

    def test_open_role_tracking(self) -> None:
        composition = [{"roleId": "medic", "count": 1}, {"roleId": "driver", "count": 1}]
        medic = self._person("m", "medic")
        second_medic = self._person("m2", "medic")
        driver = self._person("d", "driver")
        self.assertEqual(role_shortfall(composition, [medic]), {"driver": 1})
        self.assertFalse(fills_open_role(second_medic, composition, [medic]))
        self.assertTrue(fills_open_role(driver, composition, [medic]))
        self.assertTrue(fills_open_role(second_medic, [], [medic]))


if __name__ == "__main__":
    unittest.main()
