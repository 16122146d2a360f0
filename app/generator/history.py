from __future__ import annotations

import datetime
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from database import DailyPresence, get_presence_history

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 45
DEFAULT_MAX_GAP_DAYS = 3

_HISTORY_STATUS = {
    "base": "base",
    "full": "base",
    "arrival": "base",
    "home": "home",
    "departure": "home",
    "unavailable": "home",
    "leave": "home",
}


@dataclass(frozen=True)
class PersonHistory:
    last_status: str
    consecutive_days: int
    last_date: datetime.date


def _history_status(row) -> Optional[str]:
    return _HISTORY_STATUS.get((row.status or "").strip().lower())


def build_history(
    rows: Iterable[DailyPresence],
    start_date: datetime.date,
    max_gap_days: int = DEFAULT_MAX_GAP_DAYS,
) -> Dict[str, PersonHistory]:
    """Derive each person's trailing streak from presence rows before ``start_date``.

    A person is seeded only when their newest row is at most ``max_gap_days``
    before the window starts; the streak counts contiguous days with the same
    normalized status walking backwards from that row.
    """
    by_person: Dict[str, List] = defaultdict(list)
    for row in rows:
        if row.date >= start_date:
            continue
        if _history_status(row) is None:
            logger.warning(
                "Skipping presence row for %s on %s with unrecognized status %r", row.person_id, row.date, row.status
            )
            continue
        by_person[row.person_id].append(row)
    history: Dict[str, PersonHistory] = {}
    for person_id, person_rows in by_person.items():
        person_rows.sort(key=lambda item: item.date, reverse=True)
        latest = person_rows[0]
        if (start_date - latest.date).days > max_gap_days:
            continue
        status = _history_status(latest)
        count = 1
        expected = latest.date - datetime.timedelta(days=1)
        for row in person_rows[1:]:
            if row.date != expected or _history_status(row) != status:
                break
            count += 1
            expected -= datetime.timedelta(days=1)
        history[person_id] = PersonHistory(last_status=status, consecutive_days=count, last_date=latest.date)
    return history


def load_person_history(
    session,
    organization_id: str,
    start_date: datetime.date,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    max_gap_days: int = DEFAULT_MAX_GAP_DAYS,
) -> Dict[str, PersonHistory]:
    rows = get_presence_history(session, organization_id, start_date, lookback_days)
    return build_history(rows, start_date, max_gap_days)
