from __future__ import annotations

import datetime
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from availability import (
    APPROVED_ABSENCE_STATUSES,
    HOME_LIKE_STATUSES,
    SOURCE_ALGORITHM,
    STATUS_BASE,
    STATUS_UNAVAILABLE,
    active_team_rotation,
    computed_absence_status,
    entry_intent,
    normalize_status,
)
from database import (
    Absence,
    HourlyBlockage,
    InterPersonConstraint,
    Person,
    SchedulingConstraint,
    TaskTemplate,
    TeamRotation,
)
from overrides import OverrideMap
from policy import OPTIMIZATION_MODES, arrival_hour, optimization_mode, rotation_cadence
from tasks import demand_by_day

from .history import DEFAULT_MAX_GAP_DAYS, PersonHistory
from .transitions import DayPhase, label_days

logger = logging.getLogger(__name__)

SATURDAY = 5
REQUEST_DENIED_REASON = "Home request not granted due to staffing requirements."
LOCK_OVER_ABSENCE_REASON = "Manual entry keeps this person on base over an approved absence."
LOCK_OVER_BLOCKAGE_REASON = "Manual entry keeps this person on base over a full-day blockage."
HOME_LEAVE_CANCELLED_REASON = "Home leave cancelled to meet the staffing floor."


class RosterConfigurationError(ValueError):
    """Raised before generation when the inputs cannot produce a meaningful roster."""


@dataclass
class RosterConfig:
    start_date: datetime.date
    end_date: datetime.date
    people: Sequence[Person]
    settings: Dict[str, Any]
    team_rotations: Sequence[TeamRotation] = ()
    tasks: Sequence[TaskTemplate] = ()
    constraints: Sequence[SchedulingConstraint] = ()
    inter_person_constraints: Sequence[InterPersonConstraint] = ()
    absences: Sequence[Absence] = ()
    hourly_blockages: Sequence[HourlyBlockage] = ()
    history: Dict[str, PersonHistory] = field(default_factory=dict)
    custom_rotation: Optional[Tuple[int, int]] = None
    custom_min_staff: Optional[int] = None
    optimization_mode: Optional[str] = None
    overrides: Optional[OverrideMap] = None


@dataclass
class RosterEntry:
    person_id: str
    date: datetime.date
    status: str
    phase: DayPhase
    label: str
    start_time: str
    end_time: str
    source: str = SOURCE_ALGORITHM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "person_id": self.person_id,
            "date": self.date.isoformat(),
            "status": self.status,
            "phase": self.phase.value,
            "label": self.label,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "source": self.source,
        }


@dataclass
class UnfulfilledConstraint:
    person_id: str
    date: datetime.date
    reason: str
    type: str = "constraint"

    def to_dict(self) -> Dict[str, Any]:
        return {"person_id": self.person_id, "date": self.date.isoformat(), "reason": self.reason, "type": self.type}


@dataclass
class RosterResult:
    roster: List[RosterEntry]
    person_statuses: Dict[datetime.date, Dict[str, str]]
    warnings: List[str]
    unfulfilled_constraints: List[UnfulfilledConstraint]
    stats: Dict[str, Any]
    mode: str
    cadences: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    floors: Dict[datetime.date, int] = field(default_factory=dict)
    previous_on_base: Dict[str, bool] = field(default_factory=dict)

    @property
    def days(self) -> List[datetime.date]:
        return sorted(self.person_statuses.keys())

    def entries_for(self, person_id: str) -> List[RosterEntry]:
        return [entry for entry in self.roster if entry.person_id == person_id]

    def base_count(self, day: datetime.date) -> int:
        return sum(1 for status in (self.person_statuses.get(day) or {}).values() if status == STATUS_BASE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "roster": [entry.to_dict() for entry in self.roster],
            "person_statuses": {
                day.isoformat(): dict(statuses) for day, statuses in sorted(self.person_statuses.items())
            },
            "warnings": list(self.warnings),
            "unfulfilled_constraints": [item.to_dict() for item in self.unfulfilled_constraints],
            "stats": self.stats,
        }


@dataclass
class StreakState:
    """Rolling {streak type, streak length} machine for one person."""

    streak_type: str = "base"
    length: int = 0

    def peek(self, days_base: int, days_home: int) -> Tuple[str, int]:
        if days_home <= 0:
            return "base", (self.length + 1 if self.streak_type == "base" else 1)
        limit = days_base if self.streak_type == "base" else days_home
        if self.length >= limit:
            return ("home" if self.streak_type == "base" else "base"), 1
        return self.streak_type, self.length + 1

    def advance(self, days_base: int, days_home: int) -> str:
        self.streak_type, self.length = self.peek(days_base, days_home)
        return self.streak_type


@dataclass
class PersonPlan:
    person: Person
    index: int
    days_base: int
    days_home: int
    state: StreakState
    previous_on_base: bool
    seeded: bool = False
    hard: Dict[datetime.date, Tuple[str, str]] = field(default_factory=dict)
    locks: Dict[datetime.date, Tuple[str, str]] = field(default_factory=dict)
    soft: Dict[datetime.date, str] = field(default_factory=dict)
    outcome: Dict[datetime.date, str] = field(default_factory=dict)
    cancelled: set = field(default_factory=set)

    @property
    def person_id(self) -> str:
        return self.person.id

    def forced(self, day: datetime.date) -> bool:
        return day in self.locks or day in self.hard

    def fixed_status(self, day: datetime.date) -> Optional[str]:
        if day in self.locks:
            return self.locks[day][0]
        if day in self.hard:
            return self.hard[day][0]
        if day in self.soft:
            return "home"
        return None


class RosterGenerator:
    def __init__(self, config: RosterConfig) -> None:
        self.config = config
        self.settings: Dict[str, Any] = config.settings or {}
        self.warnings: List[str] = []
        self.unfulfilled: List[UnfulfilledConstraint] = []
        self.mode: str = (config.optimization_mode or optimization_mode(self.settings)).strip().lower()
        self.days: List[datetime.date] = []
        self.floors: Dict[datetime.date, int] = {}

    def generate(self) -> RosterResult:
        self._validate_config()
        self.days = self._window_days()
        people = [person for person in self.config.people if person.is_active is not False]
        logger.info(
            "Generating roster %s..%s mode=%s people=%d",
            self.config.start_date,
            self.config.end_date,
            self.mode,
            len(people),
        )
        plans = [self._build_plan(person, index) for index, person in enumerate(people)]
        self.floors = self._build_floors()
        if self.mode == "ratio":
            self._run_ratio(plans)
        else:
            self._stagger_phases(plans)
            self._run_floor(plans)
        if self.settings.get("avoid_saturday_transitions"):
            self._apply_weekend_rule(plans)
        if self.mode != "ratio":
            self._report_floor_breaches(plans)
            self._report_cancelled_leave(plans)
        self._report_inter_person(plans)
        constraint_stats = self._collect_unfulfilled(plans)
        return self._build_result(plans, constraint_stats)

    # --- configuration -------------------------------------------------------

    def _validate_config(self) -> None:
        config = self.config
        if not self.settings:
            raise RosterConfigurationError(
                "Organization settings are missing; configure roster settings before generating."
            )
        if config.start_date is None or config.end_date is None:
            raise RosterConfigurationError("Both a start date and an end date are required.")
        if config.start_date > config.end_date:
            raise RosterConfigurationError("The start date must be on or before the end date.")
        if self.mode not in OPTIMIZATION_MODES:
            raise RosterConfigurationError(f"Unknown optimization mode '{self.mode}'.")
        if self.mode == "tasks" and not any(task.segments for task in config.tasks):
            raise RosterConfigurationError(
                "No tasks are defined; add task templates or choose another optimization mode."
            )
        if config.custom_rotation is not None:
            days_base, days_home = config.custom_rotation
            if days_base is None or int(days_base) < 1:
                raise RosterConfigurationError("Custom rotation needs at least one base day.")
            if days_home is None or int(days_home) < 0:
                raise RosterConfigurationError("Custom rotation home days cannot be negative.")
        if config.custom_min_staff is not None and int(config.custom_min_staff) < 0:
            raise RosterConfigurationError("Minimum staff cannot be negative.")

    def _window_days(self) -> List[datetime.date]:
        span = (self.config.end_date - self.config.start_date).days
        return [self.config.start_date + datetime.timedelta(days=offset) for offset in range(span + 1)]

    def _cadence_for(self, person: Person) -> Tuple[int, int]:
        if self.config.custom_rotation is not None:
            days_base, days_home = self.config.custom_rotation
            return int(days_base), int(days_home)
        if (person.rotation_days_on or 0) >= 1 and (person.rotation_days_off or 0) >= 0:
            return int(person.rotation_days_on), int(person.rotation_days_off or 0)
        rotation = active_team_rotation(person.team_id, self.config.start_date, self.config.team_rotations)
        if rotation is None and person.team_id:
            team_rotations = [item for item in self.config.team_rotations if item.team_id == person.team_id]
            rotation = min(team_rotations, key=lambda item: item.start_date) if team_rotations else None
        if rotation is not None and (rotation.days_on_base or 0) >= 1 and (rotation.days_at_home or 0) >= 0:
            return int(rotation.days_on_base), int(rotation.days_at_home or 0)
        return rotation_cadence(self.settings)

    def _min_staff(self) -> int:
        if self.config.custom_min_staff is not None:
            return max(0, int(self.config.custom_min_staff))
        return max(0, int(self.settings.get("min_daily_staff") or 0))

    def _build_floors(self) -> Dict[datetime.date, int]:
        if self.mode == "tasks":
            return demand_by_day(self.config.tasks, self.days)
        if self.mode == "min_staff":
            floor = self._min_staff()
            return {day: floor for day in self.days}
        floor = max(0, int(self.settings.get("min_daily_staff") or 0))
        return {day: floor for day in self.days}

    # --- per-person inputs ---------------------------------------------------

    def _build_plan(self, person: Person, index: int) -> PersonPlan:
        days_base, days_home = self._cadence_for(person)
        state = StreakState()
        previous_on_base = False
        seeded = False
        seed = self.config.history.get(person.id)
        max_gap = int(self.settings.get("history_max_gap_days", DEFAULT_MAX_GAP_DAYS))
        if seed is not None:
            gap = (self.config.start_date - seed.last_date).days
            if 0 < gap <= max_gap:
                state = StreakState(seed.last_status, max(0, int(seed.consecutive_days)))
                for _ in range(gap - 1):
                    state.advance(days_base, days_home)
                previous_on_base = state.streak_type == "base"
                seeded = True
        plan = PersonPlan(
            person=person,
            index=index,
            days_base=days_base,
            days_home=days_home,
            state=state,
            previous_on_base=previous_on_base,
            seeded=seeded,
        )
        window = set(self.days)
        self._collect_hard_days(plan, window)
        self._collect_locks(plan, window)
        self._collect_soft_requests(plan, window)
        return plan

    def _collect_hard_days(self, plan: PersonPlan, window: set) -> None:
        person = plan.person
        for absence in self.config.absences:
            if absence.person_id != person.id:
                continue
            if computed_absence_status(person, absence) not in APPROVED_ABSENCE_STATUSES:
                continue
            for day in self.days:
                if absence.covers(day):
                    plan.hard[day] = ("home", "approved absence")
        for blockage in self.config.hourly_blockages:
            if not blockage.is_full_day:
                continue
            for day in self.days:
                if day not in plan.hard and blockage.applies_to(person, day):
                    plan.hard[day] = (STATUS_UNAVAILABLE, blockage.reason or "full-day blockage")
        for constraint in self.config.constraints:
            if constraint.person_id != person.id or constraint.type != "time_block":
                continue
            if constraint.start is None or constraint.end is None:
                continue
            for day in self.days:
                day_start = datetime.datetime.combine(day, datetime.time.min)
                if constraint.start <= day_start and constraint.end >= day_start + datetime.timedelta(hours=23, minutes=59):
                    plan.hard.setdefault(day, (STATUS_UNAVAILABLE, constraint.description or "time block"))

    def _collect_locks(self, plan: PersonPlan, window: set) -> None:
        for day, entry in plan.person.availability_map().items():
            if day not in window or (entry.source or "") == SOURCE_ALGORITHM:
                continue
            status = self._lock_status(entry.status, entry.is_available)
            if status is not None:
                plan.locks[day] = (status, "manual")
        if self.config.overrides is not None:
            for day, override in self.config.overrides.for_person(plan.person_id).items():
                if day in window:
                    plan.locks[day] = (override.persisted_status, "override")
        for day, (status, _) in sorted(plan.locks.items()):
            hard = plan.hard.get(day)
            if status == STATUS_BASE and hard is not None and hard[1] == "approved absence":
                self.warnings.append(
                    f"{day.isoformat()}: {plan.person.full_name} is locked on base despite an approved absence."
                )

    @staticmethod
    def _lock_status(raw_status: Optional[str], is_available: Optional[bool]) -> Optional[str]:
        status, _, recognized = normalize_status(raw_status)
        if not recognized:
            return None
        if status == STATUS_BASE:
            return "base" if is_available is not False else "home"
        if status == STATUS_UNAVAILABLE:
            return STATUS_UNAVAILABLE
        if status in HOME_LIKE_STATUSES:
            return "home"
        if is_available is None:
            return None
        return "base" if is_available else "home"

    def _collect_soft_requests(self, plan: PersonPlan, window: set) -> None:
        person = plan.person
        for absence in self.config.absences:
            if absence.person_id != person.id:
                continue
            if computed_absence_status(person, absence) != "pending":
                continue
            for day in self.days:
                if absence.covers(day) and day not in plan.hard:
                    plan.soft[day] = "pending absence request"
        manual = sorted(
            (day, entry)
            for day, entry in person.availability_map().items()
            if day in window and (entry.source or "") != SOURCE_ALGORITHM
        )
        for position, (day, entry) in enumerate(manual):
            if entry_intent(entry) != "home":
                continue
            stop = self.config.end_date + datetime.timedelta(days=1)
            for later_day, later_entry in manual[position + 1:]:
                if entry_intent(later_entry) == "base":
                    stop = later_day
                    break
            current = day + datetime.timedelta(days=1)
            while current < stop:
                if current not in plan.hard and current not in plan.locks:
                    plan.soft.setdefault(current, "home intent carried from manual entry")
                current += datetime.timedelta(days=1)

    # --- modes ---------------------------------------------------------------

    def _run_ratio(self, plans: List[PersonPlan]) -> None:
        for plan in plans:
            for day in self.days:
                cadence_status = plan.state.advance(plan.days_base, plan.days_home)
                fixed = plan.fixed_status(day)
                plan.outcome[day] = fixed if fixed is not None else cadence_status

    def _stagger_phases(self, plans: List[PersonPlan]) -> None:
        """Spread people without history evenly over their rotation cycle.

        Each cycle position acts as a phase slot holding at most ceil(n / cycle)
        people, so home streaks do not all land on the same days.
        """
        fresh = [
            plan
            for plan in plans
            if not plan.seeded and plan.days_home > 0 and any(not plan.forced(day) for day in self.days)
        ]
        for position, plan in enumerate(fresh):
            cycle = plan.days_base + plan.days_home
            offset = (position * cycle) // len(fresh)
            if offset == 0:
                continue
            state = StreakState()
            for _ in range(offset):
                state.advance(plan.days_base, plan.days_home)
            plan.state = state
            plan.previous_on_base = state.streak_type == "base"
        logger.debug("Staggered %d people across their rotation phases", len(fresh))

    def _run_floor(self, plans: List[PersonPlan]) -> None:
        for day in self.days:
            proposals: Dict[str, Tuple[str, int]] = {}
            for plan in plans:
                proposals[plan.person_id] = plan.state.peek(plan.days_base, plan.days_home)
                fixed = plan.fixed_status(day)
                plan.outcome[day] = fixed if fixed is not None else proposals[plan.person_id][0]
            floor = self.floors.get(day, 0)
            count = sum(1 for plan in plans if plan.outcome[day] == STATUS_BASE)
            flips: Dict[str, str] = {}
            if count < floor:
                ranked = []
                for plan in plans:
                    if plan.outcome[day] == STATUS_BASE or plan.forced(day):
                        continue
                    rank = self._repair_rank(plan, day, proposals[plan.person_id])
                    if rank is not None:
                        ranked.append((rank, plan))
                ranked.sort(key=lambda item: item[0])
                for rank, plan in ranked:
                    if count >= floor:
                        break
                    plan.outcome[day] = STATUS_BASE
                    flips[plan.person_id] = rank[3]
                    count += 1
            for plan in plans:
                kind = flips.get(plan.person_id)
                if kind in ("extend", "recall"):
                    plan.cancelled.add(day)
                if kind == "extend":
                    plan.state.length += 1
                elif kind == "recall":
                    plan.state.streak_type, plan.state.length = "base", 1
                else:
                    plan.state.advance(plan.days_base, plan.days_home)

    def _repair_rank(
        self, plan: PersonPlan, day: datetime.date, proposal: Tuple[str, int]
    ) -> Optional[Tuple[int, int, int, str]]:
        """Order floor-repair candidates: short extensions, then recalls, then soft-request holders."""
        holds_request = day in plan.soft
        if proposal[0] == "base":
            return (2, 0, plan.index, "keep")
        cap = self.settings.get("max_base_streak_extension")
        cap = plan.days_home if cap is None else int(cap)
        if plan.state.streak_type == "base":
            overrun = plan.state.length + 1 - plan.days_base
            if overrun > cap:
                return None
            return (2 if holds_request else 0, overrun, plan.index, "extend")
        remaining = max(0, plan.days_home - plan.state.length)
        return (2 if holds_request else 1, remaining, plan.index, "recall")

    def _apply_weekend_rule(self, plans: List[PersonPlan]) -> None:
        """Move exits and entries that land on a Saturday to Friday or Sunday."""
        for position in range(1, len(self.days)):
            saturday = self.days[position]
            if saturday.weekday() != SATURDAY:
                continue
            friday = self.days[position - 1]
            sunday = self.days[position + 1] if position + 1 < len(self.days) else None
            for plan in plans:
                if plan.forced(saturday):
                    continue
                on_friday = plan.outcome[friday] == STATUS_BASE
                on_saturday = plan.outcome[saturday] == STATUS_BASE
                if on_friday and not on_saturday:
                    friday_count = sum(1 for item in plans if item.outcome[friday] == STATUS_BASE)
                    if not plan.forced(friday) and friday_count - 1 >= self.floors.get(friday, 0):
                        plan.outcome[friday] = "home"
                    else:
                        plan.outcome[saturday] = STATUS_BASE
                elif not on_friday and on_saturday:
                    if not plan.forced(friday):
                        plan.outcome[friday] = STATUS_BASE
                    else:
                        plan.outcome[saturday] = "home"
                        if sunday is not None and not plan.forced(sunday):
                            plan.outcome[sunday] = STATUS_BASE

    # --- diagnostics ---------------------------------------------------------

    def _report_floor_breaches(self, plans: List[PersonPlan]) -> None:
        for day in self.days:
            floor = self.floors.get(day, 0)
            count = sum(1 for plan in plans if plan.outcome[day] == STATUS_BASE)
            if count >= floor:
                continue
            available = sum(1 for plan in plans if day not in plan.hard)
            message = f"{day.isoformat()}: {count} of {floor} required people on base"
            if available < floor:
                message += f" (only {available} available)"
            self.warnings.append(message + ".")
            logger.warning("Staffing floor missed on %s: %d < %d", day, count, floor)

    def _report_cancelled_leave(self, plans: List[PersonPlan]) -> None:
        for day in self.days:
            recalled = [
                plan for plan in plans if day in plan.cancelled and plan.outcome[day] == STATUS_BASE
            ]
            if not recalled:
                continue
            names = ", ".join(plan.person.full_name for plan in recalled)
            self.warnings.append(f"{day.isoformat()}: home leave cancelled for {names} to meet the staffing floor.")
            logger.warning("Home leave cancelled on %s for %d people", day, len(recalled))
            for plan in recalled:
                self.unfulfilled.append(
                    UnfulfilledConstraint(
                        person_id=plan.person_id, date=day, reason=HOME_LEAVE_CANCELLED_REASON, type="staffing"
                    )
                )

    def _report_inter_person(self, plans: List[PersonPlan]) -> None:
        for rule in self.config.inter_person_constraints:
            if (rule.type or "") != "forbidden_together":
                continue
            for day in self.days:
                on_base = [plan.person for plan in plans if plan.outcome[day] == STATUS_BASE]
                side_a = [p for p in on_base if str(p.custom_fields().get(rule.field_a, "")) == rule.value_a]
                side_b = [p for p in on_base if str(p.custom_fields().get(rule.field_b, "")) == rule.value_b]
                pair = next(((a, b) for a in side_a for b in side_b if a.id != b.id), None)
                if pair is None:
                    continue
                self.warnings.append(
                    f"{day.isoformat()}: {pair[0].full_name} and {pair[1].full_name} are both on base "
                    f"({rule.field_a}={rule.value_a} / {rule.field_b}={rule.value_b} must not be together)."
                )

    def _collect_unfulfilled(self, plans: List[PersonPlan]) -> Dict[str, int]:
        total = 0
        met = 0
        for plan in plans:
            requested = sorted(set(plan.hard) | set(plan.soft))
            for day in requested:
                total += 1
                if plan.outcome[day] != STATUS_BASE:
                    met += 1
                    continue
                if day not in plan.hard:
                    reason = REQUEST_DENIED_REASON
                elif plan.hard[day][1] == "approved absence":
                    reason = LOCK_OVER_ABSENCE_REASON
                else:
                    reason = LOCK_OVER_BLOCKAGE_REASON
                self.unfulfilled.append(UnfulfilledConstraint(person_id=plan.person_id, date=day, reason=reason))
        percentage = round(met / total * 100) if total else 100
        return {"total": total, "met": met, "percentage": percentage}

    def _build_result(self, plans: List[PersonPlan], constraint_stats: Dict[str, int]) -> RosterResult:
        arrival = arrival_hour(self.settings)
        roster: List[RosterEntry] = []
        person_statuses: Dict[datetime.date, Dict[str, str]] = {day: {} for day in self.days}
        daily_counts: Dict[datetime.date, int] = defaultdict(int)
        for plan in plans:
            statuses = [plan.outcome[day] for day in self.days]
            labels = label_days(statuses, plan.previous_on_base, arrival)
            for day, status, day_label in zip(self.days, statuses, labels):
                source = SOURCE_ALGORITHM
                if day in plan.locks:
                    source = plan.locks[day][1]
                roster.append(
                    RosterEntry(
                        person_id=plan.person_id,
                        date=day,
                        status=status,
                        phase=day_label.phase,
                        label=day_label.label,
                        start_time=day_label.start_time,
                        end_time=day_label.end_time,
                        source=source,
                    )
                )
                person_statuses[day][plan.person_id] = status
                if status == STATUS_BASE:
                    daily_counts[day] += 1
        total_days = len(self.days)
        total_presence = sum(daily_counts.values())
        counts = [daily_counts.get(day, 0) for day in self.days]
        stats = {
            "total_days": total_days,
            "people": len(plans),
            "avg_staff_per_day": round(total_presence / total_days, 2) if total_days else 0.0,
            "presence_ratio": round(total_presence / (total_days * len(plans)), 4) if total_days and plans else 0.0,
            "daily_counts": {day.isoformat(): daily_counts.get(day, 0) for day in self.days},
            "min_staff": min(counts) if counts else 0,
            "max_staff": max(counts) if counts else 0,
            "constraint_stats": constraint_stats,
            "cancelled_home_days": sum(1 for item in self.unfulfilled if item.type == "staffing"),
        }
        logger.info(
            "Roster generated: %d entries, %d warnings, %d unfulfilled",
            len(roster),
            len(self.warnings),
            len(self.unfulfilled),
        )
        return RosterResult(
            roster=roster,
            person_statuses=person_statuses,
            warnings=list(self.warnings),
            unfulfilled_constraints=list(self.unfulfilled),
            stats=stats,
            mode=self.mode,
            cadences={plan.person_id: (plan.days_base, plan.days_home) for plan in plans},
            floors=dict(self.floors),
            previous_on_base={plan.person_id: plan.previous_on_base for plan in plans},
        )


def generate_roster(config: RosterConfig) -> RosterResult:
    return RosterGenerator(config).generate()
