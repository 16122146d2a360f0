from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from database import Person, TaskTemplate
from overrides import OverrideKey, OverrideMap, effective_status
from tasks import peak_task_demand

ROTATION_RATIO_CANDIDATES: List[Tuple[int, int]] = [(7, 7), (8, 6), (9, 5), (10, 4), (11, 3), (12, 2)]
FULL_PRESENCE_LABEL = "full"
DAILY_ONLY_LABEL = "daily"
MAX_DETAIL_LINES = 5
PRESENT_STATUSES = {"base", "arrival"}
AWAY_STATUSES = {"home", "unavailable", "departure", "leave"}


def nearest_rotation_ratio(days_base: int, days_home: int) -> str:
    """Map a realized base/home split to the closest canonical rotation label."""
    if days_home <= 0:
        return FULL_PRESENCE_LABEL
    if days_base <= 0:
        return DAILY_ONLY_LABEL
    realized = days_base / days_home
    best = ROTATION_RATIO_CANDIDATES[0]
    best_diff = abs(realized - best[0] / best[1])
    for candidate in ROTATION_RATIO_CANDIDATES[1:]:
        diff = abs(realized - candidate[0] / candidate[1])
        if diff < best_diff:
            best, best_diff = candidate, diff
    return f"{best[0]}:{best[1]}"


def _issue(issue_type: str, severity: str, message: str, **extra: Any) -> Dict[str, Any]:
    payload = {"type": issue_type, "severity": severity, "message": message}
    payload.update(extra)
    return payload


def validate_roster_before_save(
    result,
    settings: Dict[str, Any],
    *,
    tasks: Iterable[TaskTemplate] = (),
    overrides: Optional[OverrideMap] = None,
    people: Optional[Iterable[Person]] = None,
    stored_available: Optional[Dict[OverrideKey, Optional[bool]]] = None,
    custom_rotation: Optional[Tuple[int, int]] = None,
    custom_min_staff: Optional[int] = None,
) -> Dict[str, Any]:
    """Return the issues a user must acknowledge before the roster is persisted."""
    days = sorted(result.person_statuses.keys())
    person_ids = _person_ids(result, people)
    names = {person.id: person.full_name for person in people or []}
    statuses = {
        day: {
            person_id: effective_status(person_id, day, overrides, result.person_statuses, stored_available)
            for person_id in person_ids
        }
        for day in days
    }
    issues: List[Dict[str, Any]] = []
    for warning in result.warnings:
        issues.append(_issue("algorithm", "warning", warning))

    floor = custom_min_staff if custom_min_staff is not None else int(settings.get("min_daily_staff") or 0)
    if floor > 0:
        issues.extend(_headcount_issues(days, statuses, floor, "min_staff", "minimum staff"))
    task_list = list(tasks)
    demand = peak_task_demand(task_list, days) if task_list else 0
    if demand > 0:
        issues.extend(_headcount_issues(days, statuses, demand, "task_demand", "peak task demand"))

    if (result.mode or settings.get("optimization_mode")) == "ratio":
        issues.extend(_ratio_issues(result, days, statuses, person_ids, names, custom_rotation))

    if overrides is not None and len(overrides):
        issues.append(_issue("overrides", "info", f"{len(overrides)} manual override(s) applied on top of the generated roster."))

    return {
        "issues": issues,
        "requires_acknowledgement": any(issue["severity"] != "info" for issue in issues),
    }


def _person_ids(result, people: Optional[Iterable[Person]]) -> List[str]:
    ids: List[str] = []
    if people is not None:
        ids = [person.id for person in people if person.is_active is not False]
    for day_statuses in result.person_statuses.values():
        for person_id in day_statuses:
            if person_id not in ids:
                ids.append(person_id)
    return ids


def _headcount_issues(
    days: List[datetime.date],
    statuses: Dict[datetime.date, Dict[str, str]],
    threshold: int,
    issue_type: str,
    label: str,
) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    violations = 0
    for day in days:
        present = sum(1 for status in statuses[day].values() if status in PRESENT_STATUSES)
        if present >= threshold:
            continue
        violations += 1
        if violations <= MAX_DETAIL_LINES:
            issues.append(
                _issue(
                    issue_type,
                    "warning",
                    f"{day.isoformat()}: {present} present, below {label} of {threshold}.",
                    date=day.isoformat(),
                )
            )
    if violations > MAX_DETAIL_LINES:
        issues.append(
            _issue(issue_type, "warning", f"...and {violations - MAX_DETAIL_LINES} more days below {label}.")
        )
    return issues


def _ratio_issues(
    result,
    days: List[datetime.date],
    statuses: Dict[datetime.date, Dict[str, str]],
    person_ids: List[str],
    names: Dict[str, str],
    custom_rotation: Optional[Tuple[int, int]],
) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    cadences = getattr(result, "cadences", {}) or {}
    for person_id in person_ids:
        target = custom_rotation or cadences.get(person_id)
        if not target:
            continue
        base_days = sum(1 for day in days if statuses[day].get(person_id) in PRESENT_STATUSES)
        home_days = sum(1 for day in days if statuses[day].get(person_id) in AWAY_STATUSES)
        realized_label = nearest_rotation_ratio(base_days, home_days)
        target_label = nearest_rotation_ratio(*target)
        if realized_label == target_label:
            continue
        name = names.get(person_id, person_id)
        issues.append(
            _issue(
                "ratio",
                "warning",
                f"{name}: realized rotation {realized_label} ({base_days}/{home_days}) differs from target {target_label}.",
                person_id=person_id,
            )
        )
    return issues
