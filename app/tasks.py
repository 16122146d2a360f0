from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Optional

from database import TaskSegment, TaskTemplate, WEEKDAY_NAMES
from policy import parse_time_label

SHIFT_WINDOW_DAYS = 30
MAX_REPEAT_SHIFTS = 1000


def task_active_on(task: TaskTemplate, day: datetime.date) -> bool:
    if task.start_date and day < task.start_date:
        return False
    if task.end_date and day > task.end_date:
        return False
    return True


def segment_active_on(task: TaskTemplate, segment: TaskSegment, day: datetime.date) -> bool:
    """Return True when the segment needs people on ``day``."""
    if not task_active_on(task, day):
        return False
    if segment.is_repeat:
        return True
    frequency = (segment.frequency or "daily").lower()
    if frequency == "specific_date":
        return segment.specific_date is not None and segment.specific_date == day
    if frequency == "weekly":
        return WEEKDAY_NAMES[day.weekday()] in segment.weekday_list
    return True


def daily_task_demand(tasks: Iterable[TaskTemplate], day: datetime.date) -> int:
    """Sum of required people over every segment active on ``day`` (not deduplicated by role)."""
    total = 0
    for task in tasks:
        for segment in task.segments:
            if segment_active_on(task, segment, day):
                total += max(0, int(segment.required_people or 0))
    return total


def peak_task_demand(tasks: Iterable[TaskTemplate], days: Iterable[datetime.date]) -> int:
    task_list = list(tasks)
    return max((daily_task_demand(task_list, day) for day in days), default=0)


def _segment_start(day: datetime.date, segment: TaskSegment) -> datetime.datetime:
    minutes = parse_time_label(segment.start_time) or 0
    return datetime.datetime.combine(day, datetime.time.min) + datetime.timedelta(minutes=minutes)


def _shift_payload(task: TaskTemplate, segment: TaskSegment, start: datetime.datetime) -> Dict[str, Any]:
    return {
        "task_id": task.id,
        "segment_id": segment.id,
        "start": start,
        "end": start + datetime.timedelta(hours=float(segment.duration_hours or 0)),
        "assigned_person_ids": [],
        "required_people": segment.required_people,
        "role_composition": segment.role_composition(),
        "min_rest_hours": segment.min_rest_hours_after,
    }


def generate_shifts_for_task(
    task: TaskTemplate,
    window_start: datetime.date,
    days: int = SHIFT_WINDOW_DAYS,
) -> List[Dict[str, Any]]:
    """Expand a task template into concrete shift payloads for ``days`` days from ``window_start``."""
    shifts: List[Dict[str, Any]] = []
    window_open = datetime.datetime.combine(window_start, datetime.time.min)
    window_close = window_open + datetime.timedelta(days=days)
    for segment in task.segments:
        duration = datetime.timedelta(hours=float(segment.duration_hours or 0))
        if duration <= datetime.timedelta(0):
            continue
        if segment.is_repeat:
            current = _segment_start(task.start_date or window_start, segment)
            if current < window_open:
                skips = (window_open - current) // duration
                current += skips * duration
            count = 0
            while current < window_close and count < MAX_REPEAT_SHIFTS:
                end = current + duration
                if task_active_on(task, current.date()) and end > window_open:
                    shifts.append(_shift_payload(task, segment, current))
                current = end
                count += 1
            continue
        for offset in range(days):
            day = window_start + datetime.timedelta(days=offset)
            if segment_active_on(task, segment, day):
                shifts.append(_shift_payload(task, segment, _segment_start(day, segment)))
    shifts.sort(key=lambda item: (item["start"], item["task_id"] or "", item["segment_id"] or ""))
    return shifts


def demand_by_day(tasks: Iterable[TaskTemplate], days: Iterable[datetime.date]) -> Dict[datetime.date, int]:
    task_list = list(tasks)
    return {day: daily_task_demand(task_list, day) for day in days}


def required_role_ids(role_composition: Optional[List[Dict[str, Any]]]) -> List[str]:
    ids: List[str] = []
    for item in role_composition or []:
        role_id = item.get("roleId") or item.get("role_id")
        if role_id and role_id not in ids:
            ids.append(str(role_id))
    return ids
