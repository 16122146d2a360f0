from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from generator.transitions import DAY_END, DAY_START, label_day
from policy import normalize_time

OVERRIDE_STATUSES = ("base", "home", "unavailable", "arrival", "departure", "custom")
DEFAULT_CUSTOM_START = "08:00"
DEFAULT_CUSTOM_END = "17:00"
WIZARD_BLOCK_REASON = "Requested in roster wizard"


class OverrideKey(NamedTuple):
    person_id: str
    date: datetime.date


@dataclass(frozen=True)
class ManualOverride:
    """A user correction for one (person, date) cell, not yet persisted."""

    status: str
    start_time: str
    end_time: str

    @property
    def persisted_status(self) -> str:
        if self.status in ("home", "unavailable"):
            return self.status
        return "base"

    @property
    def is_available(self) -> bool:
        return self.persisted_status == "base"

    @property
    def display_status(self) -> str:
        """Status as counted by the validation pass (custom days count as base)."""
        return "base" if self.status == "custom" else self.status


def build_override(
    status: str,
    *,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    arrival_hour: str = "10:00",
    departure_hour: str = "14:00",
) -> ManualOverride:
    label = (status or "").strip().lower()
    start = normalize_time(start_time)
    end = normalize_time(end_time)
    if label == "base":
        return ManualOverride("base", DAY_START, DAY_END)
    if label in ("home", "unavailable"):
        return ManualOverride(label, DAY_START, DAY_START)
    if label == "arrival":
        return ManualOverride("arrival", start or arrival_hour, DAY_END)
    if label == "departure":
        return ManualOverride("departure", DAY_START, end or departure_hour)
    if label == "custom":
        return ManualOverride("custom", start or DEFAULT_CUSTOM_START, end or DEFAULT_CUSTOM_END)
    raise ValueError(f"Unknown override status '{status}'.")


class OverrideMap:
    """Overrides keyed by (person_id, date)."""

    def __init__(self, items: Optional[Iterable[Tuple[OverrideKey, ManualOverride]]] = None) -> None:
        self._items: Dict[OverrideKey, ManualOverride] = {}
        for key, override in items or ():
            self._items[OverrideKey(*key)] = override

    def set(self, person_id: str, date_value: datetime.date, override: ManualOverride) -> None:
        self._items[OverrideKey(person_id, date_value)] = override

    def get(self, person_id: str, date_value: datetime.date) -> Optional[ManualOverride]:
        return self._items.get(OverrideKey(person_id, date_value))

    def remove(self, person_id: str, date_value: datetime.date) -> None:
        self._items.pop(OverrideKey(person_id, date_value), None)

    def for_person(self, person_id: str) -> Dict[datetime.date, ManualOverride]:
        return {key.date: value for key, value in self._items.items() if key.person_id == person_id}

    def items(self) -> Iterator[Tuple[OverrideKey, ManualOverride]]:
        return iter(sorted(self._items.items(), key=lambda item: (item[0].person_id, item[0].date)))

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    @classmethod
    def from_payload(
        cls,
        payload: Iterable[Dict[str, Any]],
        *,
        arrival_hour: str = "10:00",
        departure_hour: str = "14:00",
    ) -> "OverrideMap":
        overrides = cls()
        for item in payload or []:
            date_value = item.get("date")
            if isinstance(date_value, str):
                date_value = datetime.date.fromisoformat(date_value)
            person_id = item.get("person_id") or item.get("personId")
            if not person_id or not isinstance(date_value, datetime.date):
                raise ValueError("Each override needs a person_id and a date.")
            overrides.set(
                str(person_id),
                date_value,
                build_override(
                    item.get("status", ""),
                    start_time=item.get("start_time") or item.get("startTime"),
                    end_time=item.get("end_time") or item.get("endTime"),
                    arrival_hour=arrival_hour,
                    departure_hour=departure_hour,
                ),
            )
        return overrides


def effective_status(
    person_id: str,
    date_value: datetime.date,
    overrides: Optional[OverrideMap],
    person_statuses: Dict[datetime.date, Dict[str, str]],
    stored_available: Optional[Dict[OverrideKey, Optional[bool]]] = None,
) -> str:
    """Override, then generated status, then stored availability, then base."""
    if overrides is not None:
        override = overrides.get(person_id, date_value)
        if override is not None:
            return override.display_status
    generated = (person_statuses.get(date_value) or {}).get(person_id)
    if generated:
        return generated
    if stored_available:
        flag = stored_available.get(OverrideKey(person_id, date_value))
        if flag is not None:
            return "base" if flag else "home"
    return "base"


def merged_day_status(
    person_id: str,
    date_value: datetime.date,
    overrides: Optional[OverrideMap],
    person_statuses: Dict[datetime.date, Dict[str, str]],
) -> str:
    """Day-level base/home/unavailable after applying any override."""
    if overrides is not None:
        override = overrides.get(person_id, date_value)
        if override is not None:
            return override.persisted_status
    return (person_statuses.get(date_value) or {}).get(person_id, "base")


def build_presence_payload(
    result,
    overrides: Optional[OverrideMap],
    organization_id: str,
    *,
    arrival_hour: str,
    previous_on_base: Optional[Dict[str, bool]] = None,
) -> List[Dict[str, Any]]:
    """Merge overrides over the generated roster and relabel every cell through the day-phase machine."""
    previous_on_base = previous_on_base or {}
    sources: Dict[OverrideKey, str] = {
        OverrideKey(entry.person_id, entry.date): entry.source for entry in result.roster
    }
    person_ids: List[str] = []
    for entry in result.roster:
        if entry.person_id not in person_ids:
            person_ids.append(entry.person_id)
    days = sorted(result.person_statuses.keys())
    rows: List[Dict[str, Any]] = []
    for person_id in person_ids:
        previous = bool(previous_on_base.get(person_id, False))
        for day in days:
            status = merged_day_status(person_id, day, overrides, result.person_statuses)
            override = overrides.get(person_id, day) if overrides is not None else None
            if override is not None:
                start, end = override.start_time, override.end_time
                source = "override"
                blocks: List[Dict[str, Any]] = []
                if override.persisted_status != "base":
                    blocks.append(
                        {"start": DAY_START, "end": DAY_END, "reason": WIZARD_BLOCK_REASON, "type": "manual"}
                    )
            else:
                day_label = label_day(status, previous, arrival_hour)
                start, end = day_label.start_time, day_label.end_time
                source = sources.get(OverrideKey(person_id, day), "algorithm")
                blocks = []
            rows.append(
                {
                    "date": day,
                    "person_id": person_id,
                    "organization_id": organization_id,
                    "status": status,
                    "start_time": start,
                    "end_time": end,
                    "source": source,
                    "is_available": status == "base",
                    "home_status_type": None,
                    "unavailable_blocks": blocks,
                }
            )
            previous = status == "base"
    return rows
