from __future__ import annotations

import datetime
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .engine import RosterConfig, RosterResult, generate_roster
from .history import load_person_history
from availability import SOURCE_MANUAL
from database import (
    list_absences,
    list_hourly_blockages,
    list_inter_person_constraints,
    list_people,
    list_scheduling_constraints,
    list_task_templates,
    list_team_rotations,
    record_audit_log,
    upsert_daily_presence,
    write_person_availability,
)
from overrides import OverrideKey, OverrideMap, build_presence_payload
from policy import arrival_hour, departure_hour, load_active_policy
from validation import validate_roster_before_save

logger = logging.getLogger(__name__)


class UnacknowledgedIssuesError(RuntimeError):
    """Raised when a save is attempted before the validation issues were acknowledged."""

    def __init__(self, issues: List[Dict[str, Any]]):
        super().__init__(f"{len(issues)} validation issue(s) must be acknowledged before saving.")
        self.issues = issues


@dataclass
class RosterPreview:
    organization_id: str
    result: RosterResult
    validation: Dict[str, Any]
    settings: Dict[str, Any]
    overrides: OverrideMap = field(default_factory=OverrideMap)

    def to_dict(self) -> Dict[str, Any]:
        payload = self.result.to_dict()
        payload["validation"] = self.validation
        payload["override_count"] = len(self.overrides)
        return payload


def _coerce_overrides(overrides, settings: Dict[str, Any]) -> OverrideMap:
    if overrides is None:
        return OverrideMap()
    if isinstance(overrides, OverrideMap):
        return overrides
    return OverrideMap.from_payload(
        overrides,
        arrival_hour=arrival_hour(settings),
        departure_hour=departure_hour(settings),
    )


def generate_roster_for_window(
    session_factory: Callable,
    organization_id: str,
    start_date: datetime.date,
    end_date: datetime.date,
    actor: str,
    *,
    custom_rotation: Optional[Tuple[int, int]] = None,
    custom_min_staff: Optional[int] = None,
    overrides: Optional[Iterable[Dict[str, Any]] | OverrideMap] = None,
    optimization_mode: Optional[str] = None,
) -> RosterPreview:
    """Load everything the generator needs for ``organization_id``, run it and validate the output."""
    if start_date is None or end_date is None:
        raise ValueError("start_date and end_date are required.")
    started = time.perf_counter()
    with session_factory() as session:
        settings = load_active_policy(session, organization_id)
        override_map = _coerce_overrides(overrides, settings)
        people = list_people(session, organization_id)
        tasks = list_task_templates(session, organization_id)
        history = {}
        if settings:
            history = load_person_history(
                session,
                organization_id,
                start_date,
                lookback_days=int(settings.get("history_lookback_days", 45)),
                max_gap_days=int(settings.get("history_max_gap_days", 3)),
            )
        config = RosterConfig(
            start_date=start_date,
            end_date=end_date,
            people=people,
            settings=settings,
            team_rotations=list_team_rotations(session, organization_id),
            tasks=tasks,
            constraints=list_scheduling_constraints(session, organization_id),
            inter_person_constraints=list_inter_person_constraints(session, organization_id),
            absences=list_absences(session, organization_id, start_date, end_date),
            hourly_blockages=list_hourly_blockages(session, organization_id),
            history=history,
            custom_rotation=custom_rotation,
            custom_min_staff=custom_min_staff,
            optimization_mode=optimization_mode,
            overrides=override_map,
        )
        result = generate_roster(config)
        stored_available = {
            OverrideKey(person.id, day): entry.is_available
            for person in people
            for day, entry in person.availability_map().items()
            if start_date <= day <= end_date
        }
        validation = validate_roster_before_save(
            result,
            settings,
            tasks=tasks if result.mode == "tasks" else (),
            overrides=override_map,
            people=people,
            stored_available=stored_available,
            custom_rotation=custom_rotation,
            custom_min_staff=custom_min_staff if result.mode == "min_staff" else None,
        )
        record_audit_log(
            session,
            user_id=actor or "system",
            action="ROSTER_PREVIEW",
            target_type="Roster",
            target_id=organization_id,
            payload={
                "start": start_date.isoformat(),
                "end": end_date.isoformat(),
                "mode": result.mode,
                "warnings": len(result.warnings),
                "overrides": len(override_map),
                "duration_ms": round((time.perf_counter() - started) * 1000),
            },
        )
    logger.info(
        "Roster preview for %s: %d people, %d issues",
        organization_id,
        len(people),
        len(validation["issues"]),
    )
    return RosterPreview(
        organization_id=organization_id,
        result=result,
        validation=validation,
        settings=settings,
        overrides=override_map,
    )


def _availability_cells(rows: Iterable[Dict[str, Any]]) -> Dict[str, Dict[datetime.date, Dict[str, Any]]]:
    cells: Dict[str, Dict[datetime.date, Dict[str, Any]]] = {}
    for row in rows:
        person_cells = cells.setdefault(row["person_id"], {})
        # Manual cells already hold their hours, blocks and home status type.
        if row["source"] == SOURCE_MANUAL:
            continue
        person_cells[row["date"]] = {
            "status": row["status"],
            "is_available": row["is_available"],
            "start_hour": row["start_time"],
            "end_hour": row["end_time"],
            "source": row["source"],
            "home_status_type": row["home_status_type"],
            "unavailable_blocks": row["unavailable_blocks"],
        }
    return cells


def save_generated_roster(
    session_factory: Callable,
    preview: RosterPreview,
    actor: str,
    *,
    acknowledged: bool = False,
) -> Dict[str, Any]:
    """Persist a previewed roster as presence rows and per-person availability cells."""
    issues = preview.validation.get("issues", [])
    if preview.validation.get("requires_acknowledgement") and not acknowledged:
        raise UnacknowledgedIssuesError(issues)
    settings = preview.settings
    rows = build_presence_payload(
        preview.result,
        preview.overrides,
        preview.organization_id,
        arrival_hour=arrival_hour(settings),
        previous_on_base=preview.result.previous_on_base,
    )
    cells = _availability_cells(rows)
    batch_size = max(1, int(settings.get("save_batch_size", 10) or 10))
    person_ids = list(cells.keys())
    batches = 0
    with session_factory() as session:
        upsert_daily_presence(session, preview.organization_id, rows)
        for offset in range(0, len(person_ids), batch_size):
            batch = person_ids[offset : offset + batch_size]
            for person_id in batch:
                write_person_availability(session, person_id, cells[person_id])
            session.commit()
            batches += 1
            logger.debug("Saved availability batch %d (%d people)", batches, len(batch))
        record_audit_log(
            session,
            user_id=actor or "system",
            action="ROSTER_SAVE",
            target_type="Roster",
            target_id=preview.organization_id,
            payload={
                "rows": len(rows),
                "people": len(person_ids),
                "acknowledged_issues": len(issues),
                "overrides": len(preview.overrides),
            },
        )
    logger.info("Saved roster for %s: %d rows in %d batches", preview.organization_id, len(rows), batches)
    return {"saved_rows": len(rows), "people": len(person_ids), "batches": batches}
