from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from availability import (
    ENGINE_CURRENT,
    HOME_LIKE_STATUSES,
    SOURCE_ABSENCE,
    STATUS_NOT_DEFINED,
    blocks_overlap,
    resolve_availability,
)
from database import (
    Absence,
    HourlyBlockage,
    InterPersonConstraint,
    Person,
    SchedulingConstraint,
    Shift,
    TeamRotation,
)
from policy import format_minutes, parse_time_label
from roles import fills_open_role, role_counts

DEFAULT_MIN_REST_HOURS = 8.0


@dataclass
class AssignmentConflict:
    type: str
    message: str
    blocking: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "message": self.message, "blocking": self.blocking}


@dataclass
class AssignmentCheck:
    conflicts: List[AssignmentConflict] = field(default_factory=list)

    @property
    def has_blocking_issue(self) -> bool:
        return any(conflict.blocking for conflict in self.conflicts)

    @property
    def requires_confirmation(self) -> bool:
        return any(not conflict.blocking for conflict in self.conflicts)

    @property
    def is_valid(self) -> bool:
        return not self.conflicts

    @property
    def reasons(self) -> List[str]:
        return [conflict.message for conflict in self.conflicts]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "has_blocking_issue": self.has_blocking_issue,
            "requires_confirmation": self.requires_confirmation,
            "reasons": self.reasons,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
        }


def _intervals_overlap(
    start_a: datetime.datetime, end_a: datetime.datetime, start_b: datetime.datetime, end_b: datetime.datetime
) -> bool:
    return start_a < end_b and end_a > start_b


def _day_windows(shift: Shift) -> List[tuple]:
    """Split a shift into (date, "HH:MM" start, "HH:MM" end) pieces, one per calendar day it touches."""
    pieces = []
    cursor = shift.start
    while cursor < shift.end:
        day = cursor.date()
        day_start = datetime.datetime.combine(day, datetime.time.min)
        next_day = day_start + datetime.timedelta(days=1)
        piece_end = min(shift.end, next_day)
        start_min = int((cursor - day_start).total_seconds() // 60)
        end_label = "23:59" if piece_end == next_day else format_minutes(int((piece_end - day_start).total_seconds() // 60))
        pieces.append((day, format_minutes(start_min), end_label))
        cursor = piece_end
    return pieces


def hard_constraint_conflicts(
    shift: Shift, person: Person, constraints: Iterable[SchedulingConstraint]
) -> List[AssignmentConflict]:
    conflicts: List[AssignmentConflict] = []
    for constraint in constraints:
        if constraint.person_id != person.id:
            continue
        if constraint.type == "never_assign" and constraint.task_id and constraint.task_id == shift.task_id:
            conflicts.append(
                AssignmentConflict("constraint", f"{person.full_name} must never be assigned to this task.", True)
            )
        elif constraint.type == "always_assign" and constraint.task_id and constraint.task_id != shift.task_id:
            conflicts.append(
                AssignmentConflict("constraint", f"{person.full_name} is reserved for another task.", True)
            )
        elif constraint.type == "time_block" and constraint.start and constraint.end:
            if _intervals_overlap(shift.start, shift.end, constraint.start, constraint.end):
                label = constraint.description or "time block"
                conflicts.append(AssignmentConflict("constraint", f"blocked: {label}", True))
    return conflicts


def availability_conflicts(
    shift: Shift,
    person: Person,
    rotations: Sequence[TeamRotation] = (),
    absences: Sequence[Absence] = (),
    blockages: Sequence[HourlyBlockage] = (),
    engine_version: str = ENGINE_CURRENT,
) -> List[AssignmentConflict]:
    conflicts: List[AssignmentConflict] = []
    for day, window_start, window_end in _day_windows(shift):
        availability = resolve_availability(person, day, rotations, absences, blockages, engine_version)
        home_like = availability.status in HOME_LIKE_STATUSES and availability.source != SOURCE_ABSENCE
        if not availability.is_available or home_like or availability.status == STATUS_NOT_DEFINED:
            conflicts.append(AssignmentConflict("availability", f"at home on {day.isoformat()}"))
            continue
        if availability.is_arrival:
            if (parse_time_label(window_start) or 0) < (parse_time_label(availability.start_hour) or 0):
                conflicts.append(AssignmentConflict("availability", f"arrives at {availability.start_hour}"))
        if availability.is_departure:
            if (parse_time_label(window_end) or 0) > (parse_time_label(availability.end_hour) or 0):
                conflicts.append(AssignmentConflict("availability", f"departs at {availability.end_hour}"))
        for block in availability.unavailable_blocks:
            if not block.is_active():
                continue
            if blocks_overlap(block.start, block.end, window_start, window_end):
                reason = block.reason or "unavailable"
                label = "absence" if block.kind == "absence" else "hourly blockage"
                conflicts.append(AssignmentConflict("availability", f"{label}: {reason}"))
    return conflicts


def overlap_conflicts(shift: Shift, person: Person, all_shifts: Iterable[Shift]) -> List[AssignmentConflict]:
    conflicts: List[AssignmentConflict] = []
    for other in all_shifts:
        if other.id == shift.id or other.is_cancelled or person.id not in other.assigned_list:
            continue
        if _intervals_overlap(shift.start, shift.end, other.start, other.end):
            conflicts.append(
                AssignmentConflict(
                    "overlap",
                    f"already assigned {other.start:%Y-%m-%d %H:%M}-{other.end:%H:%M}",
                    True,
                )
            )
    return conflicts


def rest_conflicts(
    shift: Shift,
    person: Person,
    all_shifts: Iterable[Shift],
    default_min_rest: float = DEFAULT_MIN_REST_HOURS,
) -> List[AssignmentConflict]:
    previous: Optional[Shift] = None
    for other in all_shifts:
        if other.id == shift.id or other.is_cancelled or person.id not in other.assigned_list:
            continue
        if other.end > shift.start:
            continue
        if previous is None or other.end > previous.end:
            previous = other
    if previous is None:
        return []
    required = previous.min_rest_hours if previous.min_rest_hours is not None else default_min_rest
    gap_hours = (shift.start - previous.end).total_seconds() / 3600
    if gap_hours < required:
        return [
            AssignmentConflict(
                "rest",
                f"only {gap_hours:.1f}h rest since previous shift (requires {required:g}h)",
            )
        ]
    return []


def _matches(person: Person, field_name: str, value: str) -> bool:
    return str(person.custom_fields().get(field_name, "")) == str(value)


def inter_person_conflicts(
    shift: Shift,
    person: Person,
    rules: Iterable[InterPersonConstraint],
    people: Dict[str, Person],
) -> List[AssignmentConflict]:
    conflicts: List[AssignmentConflict] = []
    colleagues = [people[pid] for pid in shift.assigned_list if pid in people and pid != person.id]
    for rule in rules:
        if (rule.type or "") != "forbidden_together":
            continue
        for colleague in colleagues:
            pairs = (
                _matches(person, rule.field_a, rule.value_a) and _matches(colleague, rule.field_b, rule.value_b),
                _matches(person, rule.field_b, rule.value_b) and _matches(colleague, rule.field_a, rule.value_a),
            )
            if any(pairs):
                conflicts.append(
                    AssignmentConflict(
                        "inter_person",
                        f"cannot serve together with {colleague.full_name}"
                        + (f" ({rule.description})" if rule.description else ""),
                    )
                )
                break
    return conflicts


def role_conflicts(shift: Shift, person: Person, people: Dict[str, Person]) -> List[AssignmentConflict]:
    composition = shift.role_composition()
    if not role_counts(composition):
        return []
    assigned = [people[pid] for pid in shift.assigned_list if pid in people and pid != person.id]
    if fills_open_role(person, composition, assigned):
        return []
    return [AssignmentConflict("role", f"{person.full_name} does not hold any role still open on this shift")]


def validate_assignment(
    shift: Shift,
    person: Person,
    *,
    all_shifts: Sequence[Shift] = (),
    constraints: Sequence[SchedulingConstraint] = (),
    rotations: Sequence[TeamRotation] = (),
    absences: Sequence[Absence] = (),
    blockages: Sequence[HourlyBlockage] = (),
    inter_person_constraints: Sequence[InterPersonConstraint] = (),
    people: Sequence[Person] = (),
    engine_version: str = ENGINE_CURRENT,
    default_min_rest: float = DEFAULT_MIN_REST_HOURS,
) -> AssignmentCheck:
    """Check whether ``person`` may be placed on ``shift``.

    Blocking conflicts (hard constraints and overlaps) cannot be overridden; the
    rest can be accepted after the user confirms the listed reasons.
    """
    by_id = {item.id: item for item in people}
    check = AssignmentCheck()
    check.conflicts.extend(hard_constraint_conflicts(shift, person, constraints))
    check.conflicts.extend(availability_conflicts(shift, person, rotations, absences, blockages, engine_version))
    check.conflicts.extend(overlap_conflicts(shift, person, all_shifts))
    check.conflicts.extend(rest_conflicts(shift, person, all_shifts, default_min_rest))
    check.conflicts.extend(inter_person_conflicts(shift, person, inter_person_constraints, by_id))
    check.conflicts.extend(role_conflicts(shift, person, by_id))
    return check
