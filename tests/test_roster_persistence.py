from __future__ import annotations

import datetime
import json
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from availability import resolve_availability  # noqa: E402
from database import (  # noqa: E402
    AuditLog,
    Base,
    DailyPresence,
    Person,
    PersonAvailability,
    list_people,
    upsert_organization_settings,
)
from generator.api import (  # noqa: E402
    UnacknowledgedIssuesError,
    generate_roster_for_window,
    save_generated_roster,
)
from generator.engine import RosterConfigurationError  # noqa: E402
from policy import load_active_policy  # noqa: E402

START = datetime.date(2024, 9, 1)
END = datetime.date(2024, 9, 14)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    with factory() as session:
        upsert_organization_settings(
            session,
            "org",
            {"optimization_mode": "ratio", "default_days_on": 4, "default_days_off": 3, "save_batch_size": 2},
            edited_by="tester",
        )
        session.add_all(
            [
                Person(id="p-1", organization_id="org", full_name="Avery", is_active=True),
                Person(id="p-2", organization_id="org", full_name="Blake", is_active=True),
                Person(id="p-3", organization_id="org", full_name="Casey", is_active=True),
                Person(id="p-4", organization_id="org", full_name="Drew", is_active=False),
            ]
        )
        session.commit()
    try:
        yield factory
    finally:
        engine.dispose()


def test_settings_round_trip_through_policy(session_factory):
    policy = load_active_policy(session_factory, "org")
    assert policy["default_days_on"] == 4
    assert policy["save_batch_size"] == 2
    assert policy["arrival_hour"] == "10:00"
    assert load_active_policy(session_factory, "missing") == {}


def test_preview_requires_settings(session_factory):
    with pytest.raises(RosterConfigurationError):
        generate_roster_for_window(session_factory, "missing", START, END, "tester")


def test_preview_covers_active_people_and_logs(session_factory):
    preview = generate_roster_for_window(session_factory, "org", START, END, "tester")
    assert preview.result.days == [START + datetime.timedelta(days=offset) for offset in range(14)]
    assert {entry.person_id for entry in preview.result.roster} == {"p-1", "p-2", "p-3"}
    with session_factory() as session:
        actions = list(session.scalars(select(AuditLog.action)))
        log = session.scalars(select(AuditLog).where(AuditLog.action == "ROSTER_PREVIEW")).one()
    assert actions == ["ROSTER_PREVIEW"]
    assert log.payload_dict()["mode"] == "ratio"
    assert "duration_ms" in log.payload_dict()


def test_save_round_trip_matches_resolver(session_factory):
    preview = generate_roster_for_window(session_factory, "org", START, END, "tester")
    outcome = save_generated_roster(session_factory, preview, "tester", acknowledged=True)
    assert outcome == {"saved_rows": 42, "people": 3, "batches": 2}

    with session_factory() as session:
        people = list_people(session, "org")
        rows = list(session.scalars(select(DailyPresence)))
        actions = [log.action for log in session.scalars(select(AuditLog).order_by(AuditLog.id))]
    assert len(rows) == 42
    assert actions == ["ROSTER_PREVIEW", "ROSTER_SAVE"]
    for person in people:
        for day, statuses in preview.result.person_statuses.items():
            resolved = resolve_availability(person, day)
            assert resolved.status == statuses[person.id]
            assert resolved.source == "algorithm"


def test_save_is_idempotent_per_day(session_factory):
    preview = generate_roster_for_window(session_factory, "org", START, END, "tester")
    save_generated_roster(session_factory, preview, "tester", acknowledged=True)
    save_generated_roster(session_factory, preview, "tester", acknowledged=True)
    with session_factory() as session:
        assert len(list(session.scalars(select(DailyPresence)))) == 42
        people = list_people(session, "org")
    assert all(len(person.availability) == 14 for person in people)


def test_override_is_persisted_with_wizard_block(session_factory):
    day = START + datetime.timedelta(days=1)
    overrides = [{"person_id": "p-2", "date": day.isoformat(), "status": "unavailable"}]
    preview = generate_roster_for_window(session_factory, "org", START, END, "tester", overrides=overrides)
    assert preview.validation["issues"][-1]["type"] == "overrides"
    save_generated_roster(session_factory, preview, "tester", acknowledged=True)
    with session_factory() as session:
        row = session.scalars(
            select(DailyPresence).where(DailyPresence.person_id == "p-2", DailyPresence.date == day)
        ).one()
        person = session.get(Person, "p-2")
        resolved = resolve_availability(person, day)
    assert (row.status, row.source) == ("unavailable", "override")
    assert resolved.status == "unavailable"
    assert resolved.is_available is False
    assert resolved.unavailable_blocks[0].reason == "Requested in roster wizard"


def test_unacknowledged_issues_block_save(session_factory):
    preview = generate_roster_for_window(
        session_factory,
        "org",
        START,
        END,
        "tester",
        optimization_mode="min_staff",
        custom_min_staff=5,
    )
    assert preview.validation["requires_acknowledgement"]
    with pytest.raises(UnacknowledgedIssuesError) as excinfo:
        save_generated_roster(session_factory, preview, "tester")
    assert excinfo.value.issues == preview.validation["issues"]
    with session_factory() as session:
        assert list(session.scalars(select(DailyPresence))) == []


def test_saved_roster_seeds_next_window(session_factory):
    preview = generate_roster_for_window(session_factory, "org", START, END, "tester")
    save_generated_roster(session_factory, preview, "tester", acknowledged=True)
    following = generate_roster_for_window(
        session_factory, "org", END + datetime.timedelta(days=1), END + datetime.timedelta(days=7), "tester"
    )
    last_day = preview.result.person_statuses[END]
    assert following.result.previous_on_base == {
        person_id: status == "base" for person_id, status in last_day.items()
    }


def test_save_leaves_manual_cells_untouched(session_factory):
    base_day = START + datetime.timedelta(days=1)
    home_day = START + datetime.timedelta(days=4)
    dentist = [{"start": "15:00", "end": "16:30", "reason": "dentist", "type": "manual"}]
    with session_factory() as session:
        person = session.get(Person, "p-1")
        person.availability.append(
            PersonAvailability(person_id="p-1", date=base_day, status="base", is_available=True,
                               start_hour="12:00", end_hour="23:59", source="manual",
                               blocksJSON=json.dumps(dentist))
        )
        person.availability.append(
            PersonAvailability(person_id="p-1", date=home_day, status="home", is_available=False,
                               source="manual", home_status_type="gimel")
        )
        session.commit()

    preview = generate_roster_for_window(session_factory, "org", START, END, "tester")
    assert preview.result.person_statuses[base_day]["p-1"] == "base"
    assert preview.result.person_statuses[home_day]["p-1"] == "home"
    save_generated_roster(session_factory, preview, "tester", acknowledged=True)

    with session_factory() as session:
        cells = session.get(Person, "p-1").availability_map()
        on_base = resolve_availability(session.get(Person, "p-1"), base_day)
        at_home = resolve_availability(session.get(Person, "p-1"), home_day)
        rows = list(session.scalars(select(DailyPresence).where(DailyPresence.person_id == "p-1")))
    assert (cells[base_day].start_hour, cells[base_day].end_hour, cells[base_day].source) == ("12:00", "23:59", "manual")
    assert cells[base_day].blocks() == dentist
    assert (cells[home_day].home_status_type, cells[home_day].source) == ("gimel", "manual")
    assert on_base.start_hour == "12:00"
    assert [block.reason for block in on_base.unavailable_blocks] == ["dentist"]
    assert at_home.home_status_type == "gimel"
    assert len(cells) == 14
    assert len(rows) == 14
