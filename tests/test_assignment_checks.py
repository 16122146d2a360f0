from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from assignment import validate_assignment  # noqa: E402
from database import (  # noqa: E402
    HourlyBlockage,
    InterPersonConstraint,
    Person,
    PersonAvailability,
    SchedulingConstraint,
    Shift,
)

DAY = datetime.date(2024, 7, 1)


def _at(hour: int, minute: int = 0, day: datetime.date = DAY) -> datetime.datetime:
    return datetime.datetime.combine(day, datetime.time(hour, minute))


def _shift(shift_id: str, start: datetime.datetime, end: datetime.datetime, *, assigned=(), task_id="task-1",
           **extra) -> Shift:
    shift = Shift(id=shift_id, organization_id="org", task_id=task_id, start=start, end=end,
                  is_cancelled=extra.pop("is_cancelled", False), role_compositionJSON=extra.pop("roles", "[]"),
                  **extra)
    shift.assigned_list = list(assigned)
    return shift


def _person(person_id: str = "p-1", **extra) -> Person:
    return Person(id=person_id, organization_id="org", full_name=f"Person {person_id}", is_active=True, **extra)


def _blockage(start: datetime.time, end: datetime.time, reason: str = "medical") -> HourlyBlockage:
    return HourlyBlockage(id="blk", organization_id="org", person_id="p-1", date=DAY, start_time=start,
                          end_time=end, reason=reason)


class AvailabilityConflictTests(unittest.TestCase):
    def test_blockage_inside_shift_is_flagged(self) -> None:
        shift = _shift("s", _at(9), _at(17))
        check = validate_assignment(shift, _person(), blockages=[_blockage(datetime.time(12), datetime.time(13))])
        self.assertFalse(check.is_valid)
        self.assertIn("hourly blockage: medical", check.reasons)
        self.assertTrue(check.requires_confirmation)
        self.assertFalse(check.has_blocking_issue)

    def test_blockage_touching_shift_end_is_not_flagged(self) -> None:
        shift = _shift("s", _at(9), _at(17))
        check = validate_assignment(shift, _person(), blockages=[_blockage(datetime.time(17), datetime.time(18))])
        self.assertTrue(check.is_valid)

    def test_arrival_after_shift_start(self) -> None:
        person = _person()
        person.availability.append(
            PersonAvailability(person_id="p-1", date=DAY, status="base", is_available=True, start_hour="10:00",
                               end_hour="23:59", source="manual", blocksJSON="[]")
        )
        check = validate_assignment(_shift("s", _at(8), _at(12)), person)
        self.assertEqual(check.reasons, ["arrives at 10:00"])

    def test_departure_before_shift_end(self) -> None:
        person = _person()
        person.availability.append(
            PersonAvailability(person_id="p-1", date=DAY, status="base", is_available=True, start_hour="00:00",
                               end_hour="14:00", source="manual", blocksJSON="[]")
        )
        check = validate_assignment(_shift("s", _at(12), _at(16)), person)
        self.assertEqual(check.reasons, ["departs at 14:00"])

    def test_home_day_requires_confirmation(self) -> None:
        person = _person()
        person.availability.append(
            PersonAvailability(person_id="p-1", date=DAY, status="home", is_available=False, source="manual",
                               blocksJSON="[]")
        )
        check = validate_assignment(_shift("s", _at(8), _at(12)), person)
        self.assertTrue(check.reasons[0].startswith("at home"))

    def test_overnight_shift_checks_both_days(self) -> None:
        person = _person()
        next_day = DAY + datetime.timedelta(days=1)
        person.availability.append(
            PersonAvailability(person_id="p-1", date=next_day, status="home", is_available=False, source="manual",
                               blocksJSON="[]")
        )
        check = validate_assignment(_shift("s", _at(22), _at(6, day=next_day)), person)
        self.assertEqual(check.reasons, [f"at home on {next_day.isoformat()}"])


class ShiftConflictTests(unittest.TestCase):
    def test_overlap_with_other_assignment_blocks(self) -> None:
        person = _person()
        other = _shift("o", _at(10), _at(14), assigned=["p-1"])
        check = validate_assignment(_shift("s", _at(12), _at(16)), person, all_shifts=[other])
        self.assertTrue(check.has_blocking_issue)

    def test_cancelled_shift_is_ignored(self) -> None:
        person = _person()
        other = _shift("o", _at(10), _at(14), assigned=["p-1"], is_cancelled=True)
        check = validate_assignment(_shift("s", _at(12), _at(16)), person, all_shifts=[other])
        self.assertTrue(check.is_valid)

    def test_rest_uses_previous_shift_minimum(self) -> None:
        person = _person()
        previous = _shift("o", _at(0), _at(4), assigned=["p-1"], min_rest_hours=12)
        earlier = _shift("e", _at(0) - datetime.timedelta(days=1), _at(1) - datetime.timedelta(days=1),
                         assigned=["p-1"], min_rest_hours=1)
        check = validate_assignment(_shift("s", _at(10), _at(12)), person, all_shifts=[earlier, previous])
        self.assertEqual(len(check.reasons), 1)
        self.assertIn("requires 12h", check.reasons[0])

    def test_default_rest_is_eight_hours(self) -> None:
        person = _person()
        previous = _shift("o", _at(0), _at(4), assigned=["p-1"])
        self.assertFalse(validate_assignment(_shift("s", _at(10), _at(12)), person, all_shifts=[previous]).is_valid)
        self.assertTrue(validate_assignment(_shift("s", _at(12), _at(14)), person, all_shifts=[previous]).is_valid)


class ConstraintTests(unittest.TestCase):
    def test_never_assign_blocks(self) -> None:
        constraint = SchedulingConstraint(id="c", organization_id="org", person_id="p-1", type="never_assign",
                                          task_id="task-1")
        check = validate_assignment(_shift("s", _at(8), _at(12)), _person(), constraints=[constraint])
        self.assertTrue(check.has_blocking_issue)

    def test_always_assign_reserves_person(self) -> None:
        constraint = SchedulingConstraint(id="c", organization_id="org", person_id="p-1", type="always_assign",
                                          task_id="task-9")
        check = validate_assignment(_shift("s", _at(8), _at(12)), _person(), constraints=[constraint])
        self.assertTrue(check.has_blocking_issue)

    def test_time_block_overlap(self) -> None:
        constraint = SchedulingConstraint(id="c", organization_id="org", person_id="p-1", type="time_block",
                                          start=_at(11), end=_at(13), description="course")
        check = validate_assignment(_shift("s", _at(8), _at(12)), _person(), constraints=[constraint])
        self.assertEqual(check.reasons, ["blocked: course"])

    def test_forbidden_together_needs_confirmation(self) -> None:
        person = _person(custom_fieldsJSON='{"clearance": "low"}')
        colleague = _person("p-2", custom_fieldsJSON='{"clearance": "high"}')
        rule = InterPersonConstraint(id="r", organization_id="org", field_a="clearance", value_a="high",
                                     field_b="clearance", value_b="low", type="forbidden_together")
        shift = _shift("s", _at(8), _at(12), assigned=["p-2"])
        check = validate_assignment(shift, person, inter_person_constraints=[rule], people=[person, colleague])
        self.assertTrue(check.requires_confirmation)
        self.assertFalse(check.has_blocking_issue)
        self.assertIn("Person p-2", check.reasons[0])

    def test_role_composition_mismatch(self) -> None:
        person = _person(roles="driver")
        medic = _person("p-2", roles="medic")
        shift = _shift("s", _at(8), _at(12), assigned=["p-2"], roles='[{"roleId": "medic", "count": 2}]')
        check = validate_assignment(shift, person, people=[person, medic])
        self.assertEqual([conflict.type for conflict in check.conflicts], ["role"])
        self.assertTrue(validate_assignment(shift, _person("p-3", roles="medic"), people=[medic]).is_valid)


if __name__ == "__main__":
    unittest.main()
