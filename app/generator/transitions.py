"""Day-phase state machine shared by generation, save and display.

Each day moves through Home -> Arriving -> Present -> Leaving -> Home based on
whether the person is on base that day and was on base the day before.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import List, Optional, Sequence

DAY_START = "00:00"
DAY_END = "23:59"


class DayPhase(str, enum.Enum):
    HOME = "home"
    ARRIVING = "arriving"
    PRESENT = "present"
    LEAVING = "leaving"


_TRANSITIONS = {
    (False, True): DayPhase.ARRIVING,
    (True, True): DayPhase.PRESENT,
    (True, False): DayPhase.LEAVING,
    (False, False): DayPhase.HOME,
}

PHASE_LABELS = {
    DayPhase.ARRIVING: "arrival",
    DayPhase.PRESENT: "base",
    DayPhase.LEAVING: "departure",
    DayPhase.HOME: "home",
}


@dataclass(frozen=True)
class DayLabel:
    phase: DayPhase
    label: str
    status: str
    start_time: str
    end_time: str


def next_phase(previous_on_base: bool, on_base: bool) -> DayPhase:
    return _TRANSITIONS[(bool(previous_on_base), bool(on_base))]


def label_day(
    status: str,
    previous_on_base: bool,
    arrival_hour: str,
    *,
    start_hour: Optional[str] = None,
    end_hour: Optional[str] = None,
) -> DayLabel:
    """Label one day. Explicit hours on a base day take priority over the neighbour comparison."""
    on_base = status == "base"
    phase = next_phase(previous_on_base, on_base)
    if on_base and start_hour and start_hour != DAY_START:
        phase = DayPhase.ARRIVING
    elif on_base and end_hour and end_hour not in (DAY_START, DAY_END):
        phase = DayPhase.LEAVING
    if on_base:
        if phase is DayPhase.ARRIVING:
            start = start_hour if start_hour and start_hour != DAY_START else arrival_hour
            end = end_hour if end_hour and end_hour != DAY_START else DAY_END
        elif phase is DayPhase.LEAVING:
            start, end = start_hour or DAY_START, end_hour
        else:
            start, end = DAY_START, DAY_END
        return DayLabel(phase=phase, label=PHASE_LABELS[phase], status=status, start_time=start, end_time=end)
    label = "unavailable" if status == "unavailable" else PHASE_LABELS[phase]
    # Home days persist as a closed 00:00-00:00 window; "departure" is display only.
    return DayLabel(phase=phase, label=label, status=status, start_time=DAY_START, end_time=DAY_START)


def label_days(statuses: Sequence[str], previous_on_base: bool, arrival_hour: str) -> List[DayLabel]:
    labels: List[DayLabel] = []
    previous = previous_on_base
    for status in statuses:
        day = label_day(status, previous, arrival_hour)
        labels.append(day)
        previous = status == "base"
    return labels
