"""Effective availability resolution for a person on a single date.

Resolution runs an ordered list of strategies; the first one that recognizes
the date wins and produces a source variant, which is then materialized into
an :class:`EffectiveAvailability`. Hourly blockages and partial absences are
layered on top of whatever day-level status won.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from database import Absence, HourlyBlockage, Person, PersonAvailability, TeamRotation, time_label
from policy import normalize_time, parse_time_label

ENGINE_LEGACY = "legacy"
ENGINE_CURRENT = "current"

STATUS_BASE = "base"
STATUS_HOME = "home"
STATUS_UNAVAILABLE = "unavailable"
STATUS_LEAVE = "leave"
STATUS_NOT_DEFINED = "not_defined"

SOURCE_MANUAL = "manual"
SOURCE_ALGORITHM = "algorithm"
SOURCE_ABSENCE = "absence"
SOURCE_LAST_MANUAL = "last_manual"
SOURCE_PERSONAL_ROTATION = "personal_rotation"
SOURCE_ROTATION = "rotation"
SOURCE_DEFAULT = "default"

DAY_START = "00:00"
DAY_END = "23:59"
MINUTES_PER_DAY = 24 * 60
DEFAULT_HOME_TYPE = "leave_shamp"

HOME_STATUS_TYPES = {"leave_shamp", "gimel", "absent", "organization_days", "not_in_shamp"}
HOME_LIKE_STATUSES = {STATUS_HOME, STATUS_UNAVAILABLE, STATUS_LEAVE}
HOME_INTENT_STATUSES = {
    "home",
    "unavailable",
    "leave",
    "gimel",
    "not_in_shamp",
    "organization_days",
    "absent",
    "departure",
}
BASE_INTENT_STATUSES = {"base", "full", "arrival"}
APPROVED_ABSENCE_STATUSES = {"approved", "partially_approved"}

_STATUS_ALIASES: Dict[str, Tuple[str, Optional[str]]] = {
    "base": (STATUS_BASE, None),
    "full": (STATUS_BASE, None),
    "present": (STATUS_BASE, None),
    "arrival": (STATUS_BASE, None),
    "departure": (STATUS_BASE, None),
    "home": (STATUS_HOME, None),
    "unavailable": (STATUS_UNAVAILABLE, None),
    "leave": (STATUS_LEAVE, None),
    "not_defined": (STATUS_NOT_DEFINED, None),
}
for _home_type in HOME_STATUS_TYPES:
    _STATUS_ALIASES[_home_type] = (STATUS_HOME, _home_type)


@dataclass(frozen=True)
class Block:
    start: str
    end: str
    reason: str = ""
    kind: str = "hourly_blockage"
    status: Optional[str] = None
    source_id: Optional[str] = None

    def is_active(self) -> bool:
        if self.kind == "absence":
            return self.status in APPROVED_ABSENCE_STATUSES
        return self.status != "rejected"


@dataclass
class EffectiveAvailability:
    status: str
    is_available: bool
    source: str
    start_hour: Optional[str] = None
    end_hour: Optional[str] = None
    home_status_type: Optional[str] = None
    unavailable_blocks: List[Block] = field(default_factory=list)
    raw_status: Optional[str] = None
    needs_clarification: bool = False

    @property
    def is_base(self) -> bool:
        return self.status == STATUS_BASE

    @property
    def is_arrival(self) -> bool:
        return self.is_base and self.start_hour not in (None, DAY_START)

    @property
    def is_departure(self) -> bool:
        return self.is_base and self.end_hour not in (None, DAY_END)

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "isAvailable": self.is_available,
            "startHour": self.start_hour,
            "endHour": self.end_hour,
            "source": self.source,
            "homeStatusType": self.home_status_type,
            "needsClarification": self.needs_clarification,
            "unavailableBlocks": [
                {"start": b.start, "end": b.end, "reason": b.reason, "type": b.kind, "status": b.status}
                for b in self.unavailable_blocks
            ],
        }


# --- source variants ---------------------------------------------------------


@dataclass(frozen=True)
class StoredEntry:
    raw_status: Optional[str]
    is_available: Optional[bool]
    start_hour: Optional[str]
    end_hour: Optional[str]
    home_status_type: Optional[str]
    from_generator: bool
    blocks: Tuple[Block, ...] = ()


@dataclass(frozen=True)
class AbsenceCoverage:
    absence_id: Optional[str]
    approval: str
    start_hour: str
    end_hour: str
    reason: str = ""

    @property
    def full_day(self) -> bool:
        return self.start_hour == DAY_START and self.end_hour == DAY_END


@dataclass(frozen=True)
class CarriedIntent:
    on_base: bool
    home_status_type: Optional[str] = None
    origin: Optional[datetime.date] = None


@dataclass(frozen=True)
class RotationPhase:
    on_base: bool
    day_in_cycle: int
    cycle_length: int
    personal: bool
    start_hour: str = DAY_START
    end_hour: str = DAY_END


@dataclass(frozen=True)
class DefaultPresence:
    pass


SourceVariant = Union[StoredEntry, AbsenceCoverage, CarriedIntent, RotationPhase, DefaultPresence]


@dataclass
class ResolutionContext:
    person: Person
    date: datetime.date
    rotations: Sequence[TeamRotation]
    absences: Sequence[Absence]
    blockages: Sequence[HourlyBlockage]
    engine_version: str = ENGINE_CURRENT
    _entries: Optional[Dict[datetime.date, PersonAvailability]] = None

    @property
    def entries(self) -> Dict[datetime.date, PersonAvailability]:
        if self._entries is None:
            self._entries = self.person.availability_map()
        return self._entries

    def stored(self) -> Optional[PersonAvailability]:
        return self.entries.get(self.date)

    def person_absences(self) -> List[Absence]:
        return [
            absence
            for absence in self.absences
            if absence.person_id == self.person.id and absence.covers(self.date)
        ]


Strategy = Callable[[ResolutionContext], Optional[SourceVariant]]


# --- status helpers ----------------------------------------------------------


def normalize_status(value: Optional[str]) -> Tuple[str, Optional[str], bool]:
    """Map a stored status string to (status, home_status_type, recognized)."""
    label = (value or "").strip().lower()
    if not label:
        return STATUS_NOT_DEFINED, None, True
    if label in _STATUS_ALIASES:
        status, home_type = _STATUS_ALIASES[label]
        return status, home_type, True
    return STATUS_NOT_DEFINED, None, False


def _minutes(label: Optional[str], default: int = 0) -> int:
    parsed = parse_time_label(label) if label else None
    return default if parsed is None else parsed


def _end_minutes(label: Optional[str]) -> int:
    if not label or label == DAY_END:
        return MINUTES_PER_DAY
    return _minutes(label, MINUTES_PER_DAY)


def _interval(start: str, end: str) -> Tuple[int, int]:
    start_min = _minutes(start)
    end_min = _end_minutes(end)
    if end_min < start_min:
        end_min += MINUTES_PER_DAY
    return start_min, end_min


def blocks_overlap(block_start: str, block_end: str, window_start: str, window_end: str) -> bool:
    """Half-open overlap test between a blockage and a query window (HH:MM labels)."""
    b_start, b_end = _interval(block_start, block_end)
    w_start, w_end = _interval(window_start, window_end)
    return b_start < w_end and b_end > w_start


def computed_absence_status(person: Person, absence: Absence) -> str:
    """Infer an absence's approval from the person's stored day cells when it is still pending."""
    if absence is None:
        return "pending"
    stored = (absence.status or "").strip().lower()
    if stored and stored != "pending":
        return stored
    entries = person.availability_map()
    total_days = (absence.end_date - absence.start_date).days + 1
    home_days = 0
    for offset in range(max(0, total_days)):
        entry = entries.get(absence.start_date + datetime.timedelta(days=offset))
        if entry is None:
            continue
        status, _, _ = normalize_status(entry.status)
        if status in HOME_LIKE_STATUSES or entry.is_available is False:
            home_days += 1
    if total_days > 0 and home_days == total_days:
        return "approved"
    if home_days > 0:
        return "partially_approved"
    return "pending"


def _absence_window(absence: Absence, date_value: datetime.date) -> Tuple[str, str]:
    start = DAY_START
    end = DAY_END
    if absence.start_date == date_value and absence.start_time is not None:
        start = time_label(absence.start_time)
    if absence.end_date == date_value and absence.end_time is not None:
        end = time_label(absence.end_time)
    return start, end


def _stored_blocks(entry: PersonAvailability) -> Tuple[Block, ...]:
    blocks: List[Block] = []
    for raw in entry.blocks():
        start = normalize_time(raw.get("start")) or DAY_START
        end = normalize_time(raw.get("end")) or DAY_END
        blocks.append(
            Block(start=start, end=end, reason=str(raw.get("reason") or ""), kind=raw.get("type") or "manual",
                  status=raw.get("status"), source_id=raw.get("id"))
        )
    return tuple(blocks)


def _entry_variant(entry: PersonAvailability) -> StoredEntry:
    return StoredEntry(
        raw_status=entry.status,
        is_available=entry.is_available,
        start_hour=normalize_time(entry.start_hour),
        end_hour=normalize_time(entry.end_hour),
        home_status_type=entry.home_status_type,
        from_generator=(entry.source or "") == SOURCE_ALGORITHM,
        blocks=_stored_blocks(entry),
    )


def entry_intent(entry: PersonAvailability) -> Optional[str]:
    """Classify a stored cell as a forward-carrying "home" or "base" intent."""
    status = (entry.status or "").strip().lower()
    if not status:
        status = "home" if entry.is_available is False else "full"
    if status == "base":
        status = "full"
    if entry.is_available is not False:
        end = normalize_time(entry.end_hour)
        start = normalize_time(entry.start_hour)
        if end and end not in (DAY_END, DAY_START):
            status = "departure"
        elif start and start != DAY_START:
            status = "arrival"
    if status in HOME_INTENT_STATUSES:
        return "home"
    if status in BASE_INTENT_STATUSES:
        return "base"
    return None


# --- strategies --------------------------------------------------------------


def _carried_manual_intent(ctx: ResolutionContext) -> Optional[CarriedIntent]:
    previous = [
        day for day, entry in ctx.entries.items() if day < ctx.date and (entry.source or "") != SOURCE_ALGORITHM
    ]
    if previous:
        origin = max(previous)
        entry = ctx.entries[origin]
        intent = entry_intent(entry)
        if intent == "home":
            raw = (entry.status or "").strip().lower()
            home_type = entry.home_status_type or (raw if raw in HOME_STATUS_TYPES else DEFAULT_HOME_TYPE)
            return CarriedIntent(on_base=False, home_status_type=home_type, origin=origin)
        if intent == "base":
            return CarriedIntent(on_base=True, origin=origin)
        return None
    last_status = (ctx.person.last_manual_status or "").strip().lower()
    if last_status in (STATUS_HOME, STATUS_UNAVAILABLE):
        return CarriedIntent(on_base=False, home_status_type=ctx.person.last_manual_home_type or DEFAULT_HOME_TYPE)
    if last_status == STATUS_BASE:
        return CarriedIntent(on_base=True)
    return None


def _stored_entry(ctx: ResolutionContext) -> Optional[StoredEntry]:
    entry = ctx.stored()
    return _entry_variant(entry) if entry is not None else None


def _stored_manual_entry(ctx: ResolutionContext) -> Optional[StoredEntry]:
    variant = _stored_entry(ctx)
    if variant is None or variant.from_generator:
        return None
    return variant


def _stored_generator_entry(ctx: ResolutionContext) -> Optional[StoredEntry]:
    variant = _stored_entry(ctx)
    if variant is None or not variant.from_generator:
        return None
    entry_is_home = variant.is_available is False or normalize_status(variant.raw_status)[0] in HOME_LIKE_STATUSES
    if entry_is_home:
        return variant
    if _full_day_absence(ctx) is not None:
        return None
    intent = _carried_manual_intent(ctx)
    if intent is not None and not intent.on_base:
        return None
    return variant


def _approved_absence(ctx: ResolutionContext) -> Optional[AbsenceCoverage]:
    partial: Optional[AbsenceCoverage] = None
    for absence in ctx.person_absences():
        approval = computed_absence_status(ctx.person, absence)
        if approval not in APPROVED_ABSENCE_STATUSES:
            continue
        start, end = _absence_window(absence, ctx.date)
        coverage = AbsenceCoverage(
            absence_id=absence.id, approval=approval, start_hour=start, end_hour=end, reason=absence.reason or ""
        )
        if coverage.full_day:
            return coverage
        if partial is None:
            partial = coverage
    return partial


def _full_day_absence(ctx: ResolutionContext) -> Optional[AbsenceCoverage]:
    coverage = _approved_absence(ctx)
    if coverage is not None and coverage.full_day:
        return coverage
    return None


def _carried_home_intent(ctx: ResolutionContext) -> Optional[CarriedIntent]:
    intent = _carried_manual_intent(ctx)
    if intent is not None and not intent.on_base:
        return intent
    return None


def _carried_base_intent(ctx: ResolutionContext) -> Optional[CarriedIntent]:
    intent = _carried_manual_intent(ctx)
    if intent is not None and intent.on_base:
        return intent
    return None


def _rotation_phase(
    date_value: datetime.date,
    start_date: Optional[datetime.date],
    days_on: Optional[int],
    days_off: Optional[int],
    *,
    personal: bool,
    arrival: Optional[str] = None,
    departure: Optional[str] = None,
) -> Optional[RotationPhase]:
    if start_date is None or days_on is None:
        return None
    days_off = 0 if days_off is None else days_off
    if days_on < 1 or days_off < 0:
        return None
    elapsed = (date_value - start_date).days
    if elapsed < 0:
        return None
    cycle_length = days_on + days_off
    day_in_cycle = elapsed % cycle_length
    on_base = day_in_cycle < days_on
    start_hour = DAY_START
    end_hour = DAY_END
    if on_base and days_off > 0:
        if day_in_cycle == 0 and arrival:
            start_hour = arrival
        if day_in_cycle == days_on - 1 and departure:
            end_hour = departure
    return RotationPhase(
        on_base=on_base,
        day_in_cycle=day_in_cycle,
        cycle_length=cycle_length,
        personal=personal,
        start_hour=start_hour,
        end_hour=end_hour,
    )


def _personal_rotation(ctx: ResolutionContext) -> Optional[RotationPhase]:
    person = ctx.person
    return _rotation_phase(
        ctx.date,
        person.rotation_start_date,
        person.rotation_days_on,
        person.rotation_days_off,
        personal=True,
    )


def active_team_rotation(
    team_id: Optional[str], date_value: datetime.date, rotations: Iterable[TeamRotation]
) -> Optional[TeamRotation]:
    if not team_id:
        return None
    candidates = [
        rotation
        for rotation in rotations
        if rotation.team_id == team_id
        and rotation.start_date <= date_value
        and (rotation.end_date is None or rotation.end_date >= date_value)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda rotation: rotation.start_date)


def _team_rotation(ctx: ResolutionContext) -> Optional[RotationPhase]:
    rotation = active_team_rotation(ctx.person.team_id, ctx.date, ctx.rotations)
    if rotation is None:
        return None
    return _rotation_phase(
        ctx.date,
        rotation.start_date,
        rotation.days_on_base,
        rotation.days_at_home,
        personal=False,
        arrival=time_label(rotation.arrival_time),
        departure=time_label(rotation.departure_time),
    )


def _default(ctx: ResolutionContext) -> DefaultPresence:
    return DefaultPresence()


STRATEGIES: Dict[str, Tuple[Strategy, ...]] = {
    ENGINE_LEGACY: (
        _stored_manual_entry,
        _stored_generator_entry,
        _full_day_absence,
        _carried_home_intent,
        _personal_rotation,
        _team_rotation,
        _carried_base_intent,
        _default,
    ),
    ENGINE_CURRENT: (
        _stored_entry,
        _approved_absence,
        _personal_rotation,
        _team_rotation,
        _default,
    ),
}


# --- materialization ---------------------------------------------------------


def _materialize(variant: SourceVariant, ctx: ResolutionContext) -> EffectiveAvailability:
    if isinstance(variant, StoredEntry):
        return _from_stored(variant, ctx.engine_version)
    if isinstance(variant, AbsenceCoverage):
        if variant.full_day:
            return EffectiveAvailability(
                status=STATUS_HOME, is_available=False, source=SOURCE_ABSENCE, raw_status="absence"
            )
        return EffectiveAvailability(
            status=STATUS_HOME,
            is_available=True,
            source=SOURCE_ABSENCE,
            start_hour=variant.start_hour,
            end_hour=variant.end_hour,
            raw_status="absence",
        )
    if isinstance(variant, CarriedIntent):
        if variant.on_base:
            return EffectiveAvailability(
                status=STATUS_BASE, is_available=True, source=SOURCE_LAST_MANUAL, start_hour=DAY_START, end_hour=DAY_END
            )
        return EffectiveAvailability(
            status=STATUS_HOME,
            is_available=False,
            source=SOURCE_LAST_MANUAL,
            home_status_type=variant.home_status_type,
        )
    if isinstance(variant, RotationPhase):
        source = SOURCE_PERSONAL_ROTATION if variant.personal else SOURCE_ROTATION
        if variant.on_base:
            return EffectiveAvailability(
                status=STATUS_BASE,
                is_available=True,
                source=source,
                start_hour=variant.start_hour,
                end_hour=variant.end_hour,
            )
        return EffectiveAvailability(status=STATUS_HOME, is_available=False, source=source)
    return EffectiveAvailability(
        status=STATUS_BASE, is_available=True, source=SOURCE_DEFAULT, start_hour=DAY_START, end_hour=DAY_END
    )


def _from_stored(variant: StoredEntry, engine_version: str) -> EffectiveAvailability:
    source = SOURCE_ALGORITHM if variant.from_generator else SOURCE_MANUAL
    raw = (variant.raw_status or "").strip()
    if not raw:
        if variant.is_available is None and engine_version != ENGINE_LEGACY:
            return EffectiveAvailability(
                status=STATUS_NOT_DEFINED,
                is_available=False,
                source=source,
                unavailable_blocks=list(variant.blocks),
            )
        raw = STATUS_HOME if variant.is_available is False else STATUS_BASE
    status, home_type, recognized = normalize_status(raw)
    if not recognized:
        return EffectiveAvailability(
            status=STATUS_NOT_DEFINED,
            is_available=False,
            source=source,
            raw_status=variant.raw_status,
            needs_clarification=True,
            unavailable_blocks=list(variant.blocks),
        )
    if status == STATUS_BASE and variant.is_available is False:
        status = STATUS_HOME
    if status == STATUS_BASE:
        end_hour = variant.end_hour or DAY_END
        if end_hour == DAY_START:
            end_hour = DAY_END
        return EffectiveAvailability(
            status=STATUS_BASE,
            is_available=True,
            source=source,
            start_hour=variant.start_hour or DAY_START,
            end_hour=end_hour,
            raw_status=variant.raw_status,
            unavailable_blocks=list(variant.blocks),
        )
    is_available = bool(variant.is_available) if variant.is_available is not None else False
    return EffectiveAvailability(
        status=status,
        is_available=is_available and status != STATUS_NOT_DEFINED,
        source=source,
        home_status_type=variant.home_status_type or home_type,
        raw_status=variant.raw_status,
        unavailable_blocks=list(variant.blocks),
    )


def _collect_blocks(ctx: ResolutionContext) -> List[Block]:
    blocks: List[Block] = []
    for absence in ctx.person_absences():
        approval = computed_absence_status(ctx.person, absence)
        if approval == "rejected":
            continue
        start, end = _absence_window(absence, ctx.date)
        blocks.append(
            Block(start=start, end=end, reason=absence.reason or "Absence", kind="absence", status=approval,
                  source_id=absence.id)
        )
    for blockage in ctx.blockages:
        if not blockage.applies_to(ctx.person, ctx.date):
            continue
        blocks.append(
            Block(
                start=time_label(blockage.start_time),
                end=time_label(blockage.end_time),
                reason=blockage.reason or "Blocked",
                kind="hourly_blockage",
                status="approved",
                source_id=blockage.id,
            )
        )
    return blocks


def _layer_blocks(result: EffectiveAvailability, ctx: ResolutionContext) -> EffectiveAvailability:
    window_start = DAY_START
    window_end = DAY_END
    if result.is_base:
        window_start = result.start_hour or DAY_START
        window_end = result.end_hour or DAY_END
    layered = list(result.unavailable_blocks)
    for block in _collect_blocks(ctx):
        if block in layered:
            continue
        if blocks_overlap(block.start, block.end, window_start, window_end):
            layered.append(block)
    result.unavailable_blocks = layered
    return result


def resolve_availability(
    person: Person,
    date_value: datetime.date,
    rotations: Sequence[TeamRotation] = (),
    absences: Sequence[Absence] = (),
    blockages: Sequence[HourlyBlockage] = (),
    engine_version: str = ENGINE_CURRENT,
) -> EffectiveAvailability:
    """Return the single effective availability for ``person`` on ``date_value``."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    version = engine_version if engine_version in STRATEGIES else ENGINE_CURRENT
    ctx = ResolutionContext(
        person=person,
        date=date_value,
        rotations=rotations or (),
        absences=absences or (),
        blockages=blockages or (),
        engine_version=version,
    )
    for strategy in STRATEGIES[version]:
        variant = strategy(ctx)
        if variant is not None:
            return _layer_blocks(_materialize(variant, ctx), ctx)
    return _layer_blocks(_materialize(DefaultPresence(), ctx), ctx)


def resolve_range(
    person: Person,
    start: datetime.date,
    end: datetime.date,
    rotations: Sequence[TeamRotation] = (),
    absences: Sequence[Absence] = (),
    blockages: Sequence[HourlyBlockage] = (),
    engine_version: str = ENGINE_CURRENT,
) -> Dict[datetime.date, EffectiveAvailability]:
    days: Dict[datetime.date, EffectiveAvailability] = {}
    current = start
    while current <= end:
        days[current] = resolve_availability(person, current, rotations, absences, blockages, engine_version)
        current += datetime.timedelta(days=1)
    return days


def is_present_at(availability: EffectiveAvailability, target_minutes: int) -> bool:
    """Return True when the resolved day places the person on site at ``target_minutes``."""
    if not availability.is_available:
        return False
    if availability.status == STATUS_NOT_DEFINED:
        return False
    if availability.status in HOME_LIKE_STATUSES and availability.source != SOURCE_ABSENCE:
        return False
    if availability.is_arrival and target_minutes < _minutes(availability.start_hour):
        return False
    if availability.is_departure and target_minutes >= _end_minutes(availability.end_hour):
        return False
    for block in availability.unavailable_blocks:
        if not block.is_active():
            continue
        start, end = _interval(block.start, block.end)
        if start <= target_minutes < end:
            return False
    return True


def is_person_present_at_hour(
    person: Person,
    date_value: datetime.date,
    time_str: str,
    rotations: Sequence[TeamRotation] = (),
    absences: Sequence[Absence] = (),
    blockages: Sequence[HourlyBlockage] = (),
    engine_version: str = ENGINE_CURRENT,
) -> bool:
    availability = resolve_availability(person, date_value, rotations, absences, blockages, engine_version)
    return is_present_at(availability, _minutes(time_str))
