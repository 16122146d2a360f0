from __future__ import annotations

import copy
import datetime
from typing import Any, Dict, Optional, Tuple

from database import get_organization_settings


OPTIMIZATION_MODES = ("ratio", "min_staff", "tasks")
ENGINE_VERSIONS = ("legacy", "current")

SETTINGS_DEFAULTS: Dict[str, Any] = {
    "optimization_mode": "ratio",
    "min_daily_staff": 0,
    "default_days_on": 11,
    "default_days_off": 3,
    "arrival_hour": "10:00",
    "departure_hour": "14:00",
    "engine_version": "current",
    "history_lookback_days": 45,
    "history_max_gap_days": 3,
    "save_batch_size": 10,
    "avoid_saturday_transitions": False,
    "default_min_rest_hours": 8.0,
    "max_base_streak_extension": None,
}


def load_active_policy(conn, organization_id: str) -> Dict:
    """Return the organization's settings as a normalized dict, or {} when none exist."""
    if conn is None:
        return {}
    if callable(conn):
        with conn() as session:
            return _settings_payload(session, organization_id)
    return _settings_payload(conn, organization_id)


def _settings_payload(session, organization_id: str) -> Dict:
    settings = get_organization_settings(session, organization_id)
    if settings is None:
        return {}
    payload = settings.params_dict()
    payload.update(
        {
            "organization_id": settings.organization_id,
            "optimization_mode": settings.optimization_mode,
            "min_daily_staff": settings.min_daily_staff,
            "default_days_on": settings.default_days_on,
            "default_days_off": settings.default_days_off,
            "arrival_hour": settings.arrival_hour,
            "departure_hour": settings.departure_hour,
            "engine_version": settings.engine_version,
        }
    )
    return _normalize_policy(payload)


def _normalize_policy(policy: Dict) -> Dict:
    """Apply defaults and clamp stored values so runtime matches code expectations."""
    if not isinstance(policy, dict):
        return {}
    normalized = _deep_update(SETTINGS_DEFAULTS, policy)
    mode = str(normalized.get("optimization_mode") or "").strip().lower()
    normalized["optimization_mode"] = mode if mode in OPTIMIZATION_MODES else SETTINGS_DEFAULTS["optimization_mode"]
    version = str(normalized.get("engine_version") or "").strip().lower()
    normalized["engine_version"] = version if version in ENGINE_VERSIONS else SETTINGS_DEFAULTS["engine_version"]
    normalized["min_daily_staff"] = _int_setting(normalized, "min_daily_staff", minimum=0)
    normalized["default_days_on"] = _int_setting(normalized, "default_days_on", minimum=1)
    normalized["default_days_off"] = _int_setting(normalized, "default_days_off", minimum=0)
    normalized["history_lookback_days"] = _int_setting(normalized, "history_lookback_days", minimum=0)
    normalized["history_max_gap_days"] = _int_setting(normalized, "history_max_gap_days", minimum=0)
    normalized["save_batch_size"] = _int_setting(normalized, "save_batch_size", minimum=1)
    try:
        rest = float(normalized.get("default_min_rest_hours"))
    except (TypeError, ValueError):
        rest = SETTINGS_DEFAULTS["default_min_rest_hours"]
    normalized["default_min_rest_hours"] = max(0.0, rest)
    extension = normalized.get("max_base_streak_extension")
    if extension is not None:
        try:
            normalized["max_base_streak_extension"] = max(0, int(extension))
        except (TypeError, ValueError):
            normalized["max_base_streak_extension"] = None
    normalized["avoid_saturday_transitions"] = bool(normalized.get("avoid_saturday_transitions"))
    for key in ("arrival_hour", "departure_hour"):
        label = normalize_time(normalized.get(key))
        if label is None or parse_time_label(label) is None:
            label = SETTINGS_DEFAULTS[key]
        normalized[key] = label
    return normalized


def _int_setting(policy: Dict, key: str, *, minimum: int) -> int:
    try:
        value = int(policy.get(key))
    except (TypeError, ValueError):
        value = SETTINGS_DEFAULTS[key]
    return max(minimum, value)


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the settings safely."""
    return copy.deepcopy(SETTINGS_DEFAULTS)


def optimization_mode(policy: Dict) -> str:
    return (policy or {}).get("optimization_mode") or SETTINGS_DEFAULTS["optimization_mode"]


def rotation_cadence(policy: Dict) -> Tuple[int, int]:
    policy = policy or {}
    return (
        int(policy.get("default_days_on", SETTINGS_DEFAULTS["default_days_on"])),
        int(policy.get("default_days_off", SETTINGS_DEFAULTS["default_days_off"])),
    )


def engine_version(policy: Dict) -> str:
    return (policy or {}).get("engine_version") or SETTINGS_DEFAULTS["engine_version"]


def arrival_hour(policy: Dict) -> str:
    return (policy or {}).get("arrival_hour") or SETTINGS_DEFAULTS["arrival_hour"]


def departure_hour(policy: Dict) -> str:
    return (policy or {}).get("departure_hour") or SETTINGS_DEFAULTS["departure_hour"]


def normalize_time(value: Any) -> Optional[str]:
    """Trim stored hours to HH:MM ("08:30:00" -> "08:30")."""
    if value is None:
        return None
    if isinstance(value, datetime.time):
        return value.strftime("%H:%M")
    label = str(value).strip()
    if not label:
        return None
    if len(label) > 5:
        label = label[:5]
    return label


def parse_time_label(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    label = value.strip()
    if not label:
        return None
    if ":" not in label:
        return None
    hour_str, minute_str = label.split(":", 1)
    try:
        hours = int(hour_str)
        minutes = int(minute_str[:2])
    except ValueError:
        return None
    total_minutes = max(0, hours) * 60 + max(0, minutes)
    return total_minutes


def format_minutes(value: int) -> str:
    value = max(0, int(value))
    hours, minutes = divmod(value, 60)
    return f"{hours:02d}:{minutes:02d}"
