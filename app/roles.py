from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Set


def normalize_role(role: Optional[str]) -> str:
    return (role or "").strip().lower()


def role_aliases(role: str) -> List[str]:
    """Return simplified aliases for a hierarchical role label ("Medic - Senior" -> "Medic")."""
    label = (role or "").strip()
    aliases: List[str] = []
    if not label:
        return aliases
    parts = [part.strip() for part in label.split(" - ") if part.strip()]
    if len(parts) >= 2:
        base = parts[0]
        if base and base != label:
            aliases.append(base)
    return aliases


def _normalized_variants(role: str) -> Set[str]:
    variants: Set[str] = set()
    normalized = normalize_role(role)
    if normalized:
        variants.add(normalized)
    for alias in role_aliases(role):
        alias_norm = normalize_role(alias)
        if alias_norm:
            variants.add(alias_norm)
    return variants


def role_matches(candidate_role: str, target_role: str) -> bool:
    """Return True if a candidate role should satisfy the requested role.

    A specialised role ("Medic - Senior") satisfies its base role ("Medic"),
    never the other way round.
    """
    target = normalize_role(target_role)
    if not target:
        return False
    return target in _normalized_variants(candidate_role)


def person_has_role(person, role_id: str) -> bool:
    return any(role_matches(candidate, role_id) for candidate in person.role_ids)


def role_counts(role_composition: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for item in role_composition or []:
        role_id = item.get("roleId") or item.get("role_id")
        if not role_id:
            continue
        counts[str(role_id)] = counts.get(str(role_id), 0) + max(0, int(item.get("count") or 0))
    return counts


def role_shortfall(role_composition: Iterable[Dict[str, Any]], assigned_people: Iterable) -> Dict[str, int]:
    """Return the slots per role still open after greedily seating ``assigned_people``."""
    remaining = role_counts(role_composition)
    for person in assigned_people:
        for role_id, open_slots in remaining.items():
            if open_slots > 0 and person_has_role(person, role_id):
                remaining[role_id] = open_slots - 1
                break
    return {role_id: count for role_id, count in remaining.items() if count > 0}


def fills_open_role(person, role_composition: Iterable[Dict[str, Any]], assigned_people: Iterable) -> bool:
    """Return True when ``person`` can take a slot in the shift's remaining role composition."""
    composition = list(role_composition or [])
    if not role_counts(composition):
        return True
    open_roles = role_shortfall(composition, assigned_people)
    return any(person_has_role(person, role_id) for role_id in open_roles)
