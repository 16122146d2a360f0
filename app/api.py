"""Lightweight FastAPI wrapper over the roster engine.

Endpoints read organization collections through the database helpers and hand
them to the resolver / generator; the engine itself stays import-safe without
FastAPI.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure bare-name imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from assignment import validate_assignment  # noqa: E402
from availability import resolve_availability  # noqa: E402
from database import (  # noqa: E402
    Person,
    Shift,
    TaskTemplate,
    add_shifts,
    get_organization_settings,
    init_database,
    list_absences,
    list_hourly_blockages,
    list_inter_person_constraints,
    list_people,
    list_scheduling_constraints,
    list_shifts,
    list_team_rotations,
    record_audit_log,
    upsert_organization_settings,
)
from generator.api import (  # noqa: E402
    UnacknowledgedIssuesError,
    generate_roster_for_window,
    save_generated_roster,
)
from generator.engine import RosterConfigurationError  # noqa: E402
from policy import engine_version, load_active_policy  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from tasks import SHIFT_WINDOW_DAYS, generate_shifts_for_task  # noqa: E402


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    yield


app = FastAPI(title="Roster Engine API", version="0.1", lifespan=lifespan)


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    return database.SessionLocal


def _parse_date(value: Any, field_name: str) -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field_name} must be YYYY-MM-DD")


def _custom_rotation(payload: Dict[str, Any]) -> Optional[tuple]:
    rotation = payload.get("custom_rotation") or payload.get("customRotation")
    if not rotation:
        return None
    days_base = rotation.get("days_base", rotation.get("daysBase"))
    days_home = rotation.get("days_home", rotation.get("daysHome"))
    try:
        return int(days_base), int(days_home)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="custom_rotation needs integer days_base and days_home")


def _run_preview(organization_id: str, payload: Dict[str, Any], session_factory):
    start_raw = payload.get("start_date") or payload.get("startDate")
    end_raw = payload.get("end_date") or payload.get("endDate")
    if not start_raw or not end_raw:
        raise HTTPException(status_code=400, detail="start_date and end_date are required")
    custom_min_staff = payload.get("custom_min_staff", payload.get("customMinStaff"))
    try:
        return generate_roster_for_window(
            session_factory,
            organization_id,
            _parse_date(start_raw, "start_date"),
            _parse_date(end_raw, "end_date"),
            (payload.get("actor") or "api").strip() or "api",
            custom_rotation=_custom_rotation(payload),
            custom_min_staff=int(custom_min_staff) if custom_min_staff is not None else None,
            overrides=payload.get("overrides") or [],
            optimization_mode=payload.get("optimization_mode") or payload.get("optimizationMode"),
        )
    except RosterConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/organizations/{organization_id}/settings")
def organization_settings(organization_id: str, db=Depends(get_db)) -> JSONResponse:
    settings = get_organization_settings(db, organization_id)
    if not settings:
        raise HTTPException(status_code=404, detail="No settings found for organization")
    payload = {
        "organization_id": organization_id,
        "params": load_active_policy(db, organization_id),
        "lastEditedBy": settings.lastEditedBy,
        "lastEditedAt": settings.lastEditedAt.isoformat() if settings.lastEditedAt else None,
    }
    return JSONResponse(content=jsonable_encoder(payload))


@app.put("/api/v1/organizations/{organization_id}/settings")
def set_organization_settings(organization_id: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    params = payload.get("params") or {}
    actor = (payload.get("actor") or "api").strip() or "api"
    settings = upsert_organization_settings(db, organization_id, params, edited_by=actor)
    record_audit_log(
        db,
        user_id=actor,
        action="SETTINGS_EDIT",
        target_type="OrganizationSettings",
        target_id=organization_id,
        payload={"keys": sorted(params.keys())},
    )
    return JSONResponse(
        content=jsonable_encoder(
            {
                "organization_id": organization_id,
                "params": load_active_policy(db, organization_id),
                "lastEditedBy": settings.lastEditedBy,
            }
        )
    )


@app.post("/api/v1/organizations/{organization_id}/roster/preview")
def preview_roster(
    organization_id: str,
    payload: Dict[str, Any],
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    preview = _run_preview(organization_id, payload, session_factory)
    return JSONResponse(content=jsonable_encoder(preview.to_dict()))


@app.post("/api/v1/organizations/{organization_id}/roster/save")
def save_roster(
    organization_id: str,
    payload: Dict[str, Any],
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    preview = _run_preview(organization_id, payload, session_factory)
    try:
        summary = save_generated_roster(
            session_factory,
            preview,
            (payload.get("actor") or "api").strip() or "api",
            acknowledged=bool(payload.get("acknowledged")),
        )
    except UnacknowledgedIssuesError as exc:
        raise HTTPException(status_code=409, detail={"message": str(exc), "issues": exc.issues}) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    summary["validation"] = preview.validation
    return JSONResponse(content=jsonable_encoder(summary))


@app.get("/api/v1/people/{person_id}/availability")
def person_availability(
    person_id: str,
    date: str = Query(...),
    db=Depends(get_db),
) -> JSONResponse:
    target = _parse_date(date, "date")
    person: Optional[Person] = db.get(Person, person_id)
    if not person:
        raise HTTPException(status_code=404, detail="Person not found")
    organization_id = person.organization_id
    availability = resolve_availability(
        person,
        target,
        list_team_rotations(db, organization_id),
        list_absences(db, organization_id, target, target),
        list_hourly_blockages(db, organization_id),
        engine_version(load_active_policy(db, organization_id)),
    )
    payload = {"person_id": person_id, "date": target.isoformat(), **availability.to_dict()}
    return JSONResponse(content=jsonable_encoder(payload))


@app.post("/api/v1/tasks/{task_id}/shifts")
def create_task_shifts(task_id: str, payload: Dict[str, Any] | None = None, db=Depends(get_db)) -> JSONResponse:
    payload = payload or {}
    task: Optional[TaskTemplate] = db.get(TaskTemplate, task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    window_start = _parse_date(payload.get("start_date") or datetime.date.today().isoformat(), "start_date")
    days = int(payload.get("days") or SHIFT_WINDOW_DAYS)
    shifts = generate_shifts_for_task(task, window_start, days)
    try:
        created = add_shifts(db, task.organization_id, shifts)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    record_audit_log(
        db,
        user_id=(payload.get("actor") or "api"),
        action="SHIFTS_GENERATE",
        target_type="Task",
        target_id=task_id,
        payload={"start": window_start.isoformat(), "days": days, "created": len(created)},
    )
    return JSONResponse(content=jsonable_encoder({"task_id": task_id, "created": created}))


def _assignment_context(db: Session, shift: Shift) -> Dict[str, Any]:
    organization_id = shift.organization_id
    window_start = shift.start - datetime.timedelta(days=2)
    window_end = shift.end + datetime.timedelta(days=2)
    return {
        "all_shifts": list_shifts(db, organization_id, window_start, window_end),
        "constraints": list_scheduling_constraints(db, organization_id),
        "rotations": list_team_rotations(db, organization_id),
        "absences": list_absences(db, organization_id, window_start.date(), window_end.date()),
        "blockages": list_hourly_blockages(db, organization_id),
        "inter_person_constraints": list_inter_person_constraints(db, organization_id),
        "people": list_people(db, organization_id),
    }


@app.post("/api/v1/shifts/{shift_id}/assignment-check")
def check_assignment(shift_id: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    shift: Optional[Shift] = db.get(Shift, shift_id)
    if not shift:
        raise HTTPException(status_code=404, detail="Shift not found")
    person_id = payload.get("person_id") or payload.get("personId")
    person: Optional[Person] = db.get(Person, person_id) if person_id else None
    if not person:
        raise HTTPException(status_code=404, detail="Person not found")
    settings = load_active_policy(db, shift.organization_id)
    check = validate_assignment(
        shift,
        person,
        engine_version=engine_version(settings),
        default_min_rest=float(settings.get("default_min_rest_hours", 8.0) or 8.0),
        **_assignment_context(db, shift),
    )
    return JSONResponse(content=jsonable_encoder({"shift_id": shift_id, "person_id": person.id, **check.to_dict()}))
