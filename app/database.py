from __future__ import annotations

import datetime
import json
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload, sessionmaker
from sqlalchemy.types import Time


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
DATABASE_URL = f"sqlite:///{(DATA_DIR / 'roster.db').as_posix()}"
ABSENCE_STATUS_CHOICES = {"approved", "pending", "rejected", "partially_approved"}
WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _load_json(raw: Optional[str], fallback):
    try:
        value = json.loads(raw or "null")
    except json.JSONDecodeError:
        return fallback
    if isinstance(value, type(fallback)):
        return value
    return fallback


def _split_csv(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def time_label(value: Optional[datetime.time]) -> Optional[str]:
    """Render a stored time column as an HH:MM label."""
    if value is None:
        return None
    return value.strftime("%H:%M")


class Base(DeclarativeBase):
    """Metadata for every roster table living in roster.db."""

    pass


class OrganizationSettings(Base):
    __tablename__ = "organization_settings"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    optimization_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="ratio")
    min_daily_staff: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    default_days_on: Mapped[int] = mapped_column(Integer, nullable=False, default=11)
    default_days_off: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    arrival_hour: Mapped[str] = mapped_column(String(8), nullable=False, default="10:00")
    departure_hour: Mapped[str] = mapped_column(String(8), nullable=False, default="14:00")
    engine_version: Mapped[str] = mapped_column(String(16), nullable=False, default="current")
    paramsJSON: Mapped[str] = mapped_column(String(4000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def params_dict(self) -> Dict:
        return _load_json(self.paramsJSON, {})


class Team(Base):
    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    members: Mapped[List["Person"]] = relationship(back_populates="team")


class TeamRotation(Base):
    __tablename__ = "team_rotations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    team_id: Mapped[str] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    days_on_base: Mapped[int] = mapped_column(Integer, nullable=False, default=11)
    days_at_home: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    arrival_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    departure_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)


class Person(Base):
    __tablename__ = "people"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    team_id: Mapped[str | None] = mapped_column(ForeignKey("teams.id", ondelete="SET NULL"), nullable=True)
    role_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    roles: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    custom_fieldsJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    rotation_days_on: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rotation_days_off: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rotation_start_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    last_manual_status: Mapped[str | None] = mapped_column(String(24), nullable=True)
    last_manual_home_type: Mapped[str | None] = mapped_column(String(32), nullable=True)

    team: Mapped[Optional[Team]] = relationship(back_populates="members")
    availability: Mapped[List["PersonAvailability"]] = relationship(
        back_populates="person", cascade="all, delete-orphan"
    )

    @property
    def role_list(self) -> List[str]:
        return _split_csv(self.roles)

    @role_list.setter
    def role_list(self, roles: Iterable[str]) -> None:
        self.roles = ",".join(sorted({role.strip() for role in roles if role and role.strip()}))

    @property
    def role_ids(self) -> List[str]:
        ids = [self.role_id] if self.role_id else []
        for role in self.role_list:
            if role not in ids:
                ids.append(role)
        return ids

    def custom_fields(self) -> Dict[str, Any]:
        return _load_json(self.custom_fieldsJSON, {})

    def availability_map(self) -> Dict[datetime.date, "PersonAvailability"]:
        return {entry.date: entry for entry in self.availability}


class PersonAvailability(Base):
    """One cell of a person's sparse per-date availability map."""

    __tablename__ = "person_availability"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[str] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str | None] = mapped_column(String(24), nullable=True)
    is_available: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    start_hour: Mapped[str | None] = mapped_column(String(8), nullable=True)
    end_hour: Mapped[str | None] = mapped_column(String(8), nullable=True)
    source: Mapped[str] = mapped_column(String(24), nullable=False, default="manual")
    home_status_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    blocksJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="[]")

    person: Mapped[Person] = relationship(back_populates="availability")

    __table_args__ = (
        UniqueConstraint("person_id", "date", name="uq_person_availability_day"),
    )

    def blocks(self) -> List[Dict[str, Any]]:
        return [item for item in _load_json(self.blocksJSON, []) if isinstance(item, dict)]


class Absence(Base):
    __tablename__ = "absences"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    person_id: Mapped[str] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=False)
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    reason: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str | None] = mapped_column(String(24), nullable=True)

    def covers(self, date_value: datetime.date) -> bool:
        return self.start_date <= date_value <= self.end_date


class HourlyBlockage(Base):
    __tablename__ = "hourly_blockages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    person_id: Mapped[str | None] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=True)
    team_id: Mapped[str | None] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=True)
    date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0 = Monday
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    def applies_to(self, person: Person, date_value: datetime.date) -> bool:
        if self.person_id is not None:
            if self.person_id != person.id:
                return False
        elif self.team_id is None or self.team_id != person.team_id:
            return False
        if self.date is not None:
            return self.date == date_value
        if self.day_of_week is not None:
            return self.day_of_week == date_value.weekday()
        return False

    @property
    def is_full_day(self) -> bool:
        return time_label(self.start_time) == "00:00" and time_label(self.end_time) == "23:59"


class SchedulingConstraint(Base):
    __tablename__ = "scheduling_constraints"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    person_id: Mapped[str] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(24), nullable=False)
    task_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    start: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    end: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")


class InterPersonConstraint(Base):
    __tablename__ = "inter_person_constraints"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    field_a: Mapped[str] = mapped_column(String(60), nullable=False)
    value_a: Mapped[str] = mapped_column(String(120), nullable=False)
    field_b: Mapped[str] = mapped_column(String(60), nullable=False)
    value_b: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="forbidden_together")
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")


class TaskTemplate(Base):
    __tablename__ = "task_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    start_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)

    segments: Mapped[List["TaskSegment"]] = relationship(
        back_populates="task", cascade="all, delete-orphan"
    )


class TaskSegment(Base):
    __tablename__ = "task_segments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(ForeignKey("task_templates.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    frequency: Mapped[str] = mapped_column(String(16), nullable=False, default="daily")
    days_of_week: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    specific_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    start_time: Mapped[str] = mapped_column(String(8), nullable=False, default="08:00")
    duration_hours: Mapped[float] = mapped_column(Float, nullable=False, default=8.0)
    required_people: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    role_compositionJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="[]")
    min_rest_hours_after: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_repeat: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    task: Mapped[TaskTemplate] = relationship(back_populates="segments")

    @property
    def weekday_list(self) -> List[str]:
        return [day.lower() for day in _split_csv(self.days_of_week)]

    def role_composition(self) -> List[Dict[str, Any]]:
        return [item for item in _load_json(self.role_compositionJSON, []) if isinstance(item, dict)]


class Shift(Base):
    __tablename__ = "shifts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    task_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    segment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    start: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    end: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    assigned_person_ids: Mapped[str] = mapped_column(String(2000), nullable=False, default="")
    is_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    required_people: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    role_compositionJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="[]")
    min_rest_hours: Mapped[float | None] = mapped_column(Float, nullable=True)

    @property
    def assigned_list(self) -> List[str]:
        return _split_csv(self.assigned_person_ids)

    @assigned_list.setter
    def assigned_list(self, person_ids: Iterable[str]) -> None:
        ordered: List[str] = []
        for person_id in person_ids:
            if person_id and person_id not in ordered:
                ordered.append(person_id)
        self.assigned_person_ids = ",".join(ordered)

    def role_composition(self) -> List[Dict[str, Any]]:
        return [item for item in _load_json(self.role_compositionJSON, []) if isinstance(item, dict)]


class DailyPresence(Base):
    __tablename__ = "daily_presence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    person_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False)
    start_time: Mapped[str] = mapped_column(String(8), nullable=False, default="00:00")
    end_time: Mapped[str] = mapped_column(String(8), nullable=False, default="23:59")
    source: Mapped[str] = mapped_column(String(24), nullable=False, default="algorithm")
    home_status_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("date", "person_id", "organization_id", name="uq_daily_presence_cell"),
    )


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Roster")
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(4000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def payload_dict(self) -> Dict:
        return _load_json(self.payloadJSON, {})


engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        columns = {row[1]: True for row in conn.execute(text("PRAGMA table_info(people)"))}
        if "last_manual_home_type" not in columns:
            conn.execute(text("ALTER TABLE people ADD COLUMN last_manual_home_type VARCHAR(32)"))
        settings_cols = {row[1]: True for row in conn.execute(text("PRAGMA table_info(organization_settings)"))}
        if "engine_version" not in settings_cols:
            conn.execute(
                text("ALTER TABLE organization_settings ADD COLUMN engine_version VARCHAR(16) NOT NULL DEFAULT 'current'")
            )


def get_organization_settings(session, organization_id: str) -> Optional[OrganizationSettings]:
    return session.get(OrganizationSettings, organization_id)


def upsert_organization_settings(
    session,
    organization_id: str,
    values: Dict[str, Any],
    *,
    edited_by: str = "system",
) -> OrganizationSettings:
    if not organization_id:
        raise ValueError("organization_id is required.")
    settings = session.get(OrganizationSettings, organization_id)
    if settings is None:
        settings = OrganizationSettings(organization_id=organization_id)
        session.add(settings)
    extras = settings.params_dict()
    for key, value in (values or {}).items():
        if key in {"optimization_mode", "min_daily_staff", "default_days_on", "default_days_off",
                   "arrival_hour", "departure_hour", "engine_version"}:
            setattr(settings, key, value)
        else:
            extras[key] = value
    settings.paramsJSON = json.dumps(extras)
    settings.lastEditedBy = edited_by
    settings.lastEditedAt = _utcnow()
    session.commit()
    return settings


def list_people(session, organization_id: str, only_active: bool = True) -> List[Person]:
    stmt = (
        select(Person)
        .options(selectinload(Person.availability))
        .where(Person.organization_id == organization_id)
        .order_by(Person.full_name, Person.id)
    )
    if only_active:
        stmt = stmt.where(Person.is_active.is_(True))
    return list(session.scalars(stmt))


def list_team_rotations(session, organization_id: str) -> List[TeamRotation]:
    return list(
        session.scalars(
            select(TeamRotation)
            .where(TeamRotation.organization_id == organization_id)
            .order_by(TeamRotation.start_date)
        )
    )


def list_absences(
    session,
    organization_id: str,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
) -> List[Absence]:
    stmt = select(Absence).where(Absence.organization_id == organization_id)
    if start is not None:
        stmt = stmt.where(Absence.end_date >= start)
    if end is not None:
        stmt = stmt.where(Absence.start_date <= end)
    return list(session.scalars(stmt.order_by(Absence.start_date)))


def list_hourly_blockages(session, organization_id: str) -> List[HourlyBlockage]:
    return list(session.scalars(select(HourlyBlockage).where(HourlyBlockage.organization_id == organization_id)))


def list_scheduling_constraints(session, organization_id: str) -> List[SchedulingConstraint]:
    return list(
        session.scalars(select(SchedulingConstraint).where(SchedulingConstraint.organization_id == organization_id))
    )


def list_inter_person_constraints(session, organization_id: str) -> List[InterPersonConstraint]:
    return list(
        session.scalars(select(InterPersonConstraint).where(InterPersonConstraint.organization_id == organization_id))
    )


def list_task_templates(session, organization_id: str) -> List[TaskTemplate]:
    return list(
        session.scalars(
            select(TaskTemplate)
            .options(selectinload(TaskTemplate.segments))
            .where(TaskTemplate.organization_id == organization_id)
            .order_by(TaskTemplate.name)
        )
    )


def list_shifts(
    session,
    organization_id: str,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
) -> List[Shift]:
    stmt = select(Shift).where(Shift.organization_id == organization_id)
    if start is not None:
        stmt = stmt.where(Shift.end > start)
    if end is not None:
        stmt = stmt.where(Shift.start < end)
    return list(session.scalars(stmt.order_by(Shift.start)))


def add_shifts(session, organization_id: str, payloads: Iterable[Dict[str, Any]]) -> List[str]:
    created: List[str] = []
    for payload in payloads:
        start = payload.get("start")
        end = payload.get("end")
        if not isinstance(start, datetime.datetime) or not isinstance(end, datetime.datetime):
            raise TypeError("Shift start and end must be datetime instances.")
        if end <= start:
            raise ValueError("Shift end time must be after start time.")
        shift = Shift(
            organization_id=organization_id,
            task_id=payload.get("task_id"),
            segment_id=payload.get("segment_id"),
            start=start,
            end=end,
            required_people=int(payload.get("required_people") or 0),
            role_compositionJSON=json.dumps(payload.get("role_composition") or []),
            min_rest_hours=payload.get("min_rest_hours"),
        )
        shift.assigned_list = payload.get("assigned_person_ids") or []
        session.add(shift)
        session.flush()
        created.append(shift.id)
    session.commit()
    return created


def get_presence_history(
    session,
    organization_id: str,
    before: datetime.date,
    lookback_days: int = 45,
) -> List[DailyPresence]:
    """Return presence rows in [before - lookback_days, before), newest first."""
    if not isinstance(before, datetime.date):
        raise TypeError("before must be a date instance.")
    window_start = before - datetime.timedelta(days=max(0, int(lookback_days)))
    return list(
        session.scalars(
            select(DailyPresence)
            .where(
                DailyPresence.organization_id == organization_id,
                DailyPresence.date >= window_start,
                DailyPresence.date < before,
            )
            .order_by(DailyPresence.person_id, DailyPresence.date.desc())
        )
    )


def upsert_daily_presence(session, organization_id: str, rows: Iterable[Dict[str, Any]]) -> int:
    """Insert or update presence rows keyed by (date, person_id, organization_id)."""
    payload = list(rows)
    if not payload:
        return 0
    dates = {row["date"] for row in payload}
    person_ids = {row["person_id"] for row in payload}
    existing = {
        (item.date, item.person_id): item
        for item in session.scalars(
            select(DailyPresence).where(
                DailyPresence.organization_id == organization_id,
                DailyPresence.date.in_(dates),
                DailyPresence.person_id.in_(person_ids),
            )
        )
    }
    for row in payload:
        key = (row["date"], row["person_id"])
        record = existing.get(key)
        if record is None:
            record = DailyPresence(organization_id=organization_id, person_id=row["person_id"], date=row["date"])
            session.add(record)
            existing[key] = record
        record.status = row["status"]
        record.start_time = row.get("start_time") or "00:00"
        record.end_time = row.get("end_time") or "23:59"
        record.source = row.get("source") or "algorithm"
        record.home_status_type = row.get("home_status_type")
    session.commit()
    return len(payload)


def write_person_availability(session, person_id: str, entries: Dict[datetime.date, Dict[str, Any]]) -> int:
    """Merge per-date cells into a person's availability map without committing."""
    person = session.get(Person, person_id)
    if person is None:
        raise ValueError(f"Person with id {person_id} was not found.")
    current = person.availability_map()
    for date_value, values in entries.items():
        entry = current.get(date_value)
        if entry is None:
            entry = PersonAvailability(person_id=person_id, date=date_value)
            person.availability.append(entry)
            current[date_value] = entry
        entry.status = values.get("status")
        entry.is_available = values.get("is_available")
        entry.start_hour = values.get("start_hour")
        entry.end_hour = values.get("end_hour")
        entry.source = values.get("source") or "manual"
        entry.home_status_type = values.get("home_status_type")
        entry.blocksJSON = json.dumps(values.get("unavailable_blocks") or [])
    return len(entries)


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Roster",
    target_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log
