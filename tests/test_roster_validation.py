from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import TaskSegment, TaskTemplate  # noqa: E402
from generator.engine import RosterResult  # noqa: E402
from overrides import OverrideMap, build_override  # noqa: E402
from policy import build_default_policy  # noqa: E402
from validation import nearest_rotation_ratio, validate_roster_before_save  # noqa: E402

START = datetime.date(2024, 6, 2)


def _result(statuses_by_person, mode="ratio", warnings=None, cadences=None) -> RosterResult:
    days = len(next(iter(statuses_by_person.values())))
    person_statuses = {}
    for offset in range(days):
        day = START + datetime.timedelta(days=offset)
        person_statuses[day] = {person_id: seq[offset] for person_id, seq in statuses_by_person.items()}
    return RosterResult(
        roster=[],
        person_statuses=person_statuses,
        warnings=list(warnings or []),
        unfulfilled_constraints=[],
        stats={},
        mode=mode,
        cadences=cadences or {},
    )


class NearestRatioTests(unittest.TestCase):
    def test_canonical_matches(self) -> None:
        self.assertEqual(nearest_rotation_ratio(11, 3), "11:3")
        self.assertEqual(nearest_rotation_ratio(7, 7), "7:7")
        self.assertEqual(nearest_rotation_ratio(14, 7), "9:5")
        self.assertEqual(nearest_rotation_ratio(30, 1), "12:2")

    def test_degenerate_labels(self) -> None:
        self.assertEqual(nearest_rotation_ratio(10, 0), "full")
        self.assertEqual(nearest_rotation_ratio(0, 10), "daily")
        self.assertEqual(nearest_rotation_ratio(0, 0), "full")

    def test_below_smallest_candidate_picks_seven_seven(self) -> None:
        self.assertEqual(nearest_rotation_ratio(1, 5), "7:7")


class ValidateBeforeSaveTests(unittest.TestCase):
    def test_algorithm_warnings_surface_verbatim(self) -> None:
        result = _result({"p-1": ["base"] * 14}, mode="min_staff", warnings=["2024-06-02: 1 of 3 required"])
        report = validate_roster_before_save(result, build_default_policy())
        self.assertEqual(report["issues"][0]["message"], "2024-06-02: 1 of 3 required")
        self.assertEqual(report["issues"][0]["type"], "algorithm")
        self.assertTrue(report["requires_acknowledgement"])

    def test_min_staff_issues_are_capped(self) -> None:
        result = _result({"p-1": ["home"] * 8, "p-2": ["base"] * 8}, mode="min_staff")
        report = validate_roster_before_save(result, build_default_policy(), custom_min_staff=2)
        staff_issues = [issue for issue in report["issues"] if issue["type"] == "min_staff"]
        self.assertEqual(len(staff_issues), 6)
        self.assertIn("3 more days", staff_issues[-1]["message"])

    def test_arrival_override_counts_as_present(self) -> None:
        result = _result({"p-1": ["home"], "p-2": ["base"]}, mode="min_staff")
        overrides = OverrideMap()
        overrides.set("p-1", START, build_override("arrival"))
        report = validate_roster_before_save(result, build_default_policy(), overrides=overrides, custom_min_staff=2)
        self.assertFalse([issue for issue in report["issues"] if issue["type"] == "min_staff"])
        info = [issue for issue in report["issues"] if issue["type"] == "overrides"]
        self.assertEqual(info[0]["severity"], "info")
        self.assertFalse(report["requires_acknowledgement"])

    def test_task_demand_shortfall(self) -> None:
        task = TaskTemplate(id="t", organization_id="org", name="Patrol")
        task.segments.append(TaskSegment(id="s", task_id="t", frequency="daily", start_time="06:00",
                                         duration_hours=12, required_people=3, is_repeat=False))
        result = _result({"p-1": ["base"] * 2, "p-2": ["base"] * 2}, mode="tasks")
        report = validate_roster_before_save(result, build_default_policy(), tasks=[task])
        demand = [issue for issue in report["issues"] if issue["type"] == "task_demand"]
        self.assertEqual(len(demand), 2)

    def test_ratio_drift_reported_against_target(self) -> None:
        result = _result({"p-1": ["base"] * 7 + ["home"] * 7}, cadences={"p-1": (11, 3)})
        report = validate_roster_before_save(result, build_default_policy())
        ratio = [issue for issue in report["issues"] if issue["type"] == "ratio"]
        self.assertEqual(len(ratio), 1)
        self.assertIn("7:7", ratio[0]["message"])
        self.assertIn("11:3", ratio[0]["message"])

    def test_matching_ratio_has_no_issue(self) -> None:
        result = _result({"p-1": ["base"] * 11 + ["home"] * 3}, cadences={"p-1": (11, 3)})
        report = validate_roster_before_save(result, build_default_policy())
        self.assertEqual(report["issues"], [])
        self.assertFalse(report["requires_acknowledgement"])

    def test_departure_override_counts_as_home(self) -> None:
        result = _result({"p-1": ["base"] * 14}, cadences={"p-1": (7, 7)})
        overrides = OverrideMap()
        for offset in range(7, 14):
            overrides.set("p-1", START + datetime.timedelta(days=offset), build_override("departure"))
        report = validate_roster_before_save(result, build_default_policy(), overrides=overrides)
        self.assertFalse([issue for issue in report["issues"] if issue["type"] == "ratio"])


if __name__ == "__main__":
    unittest.main()
