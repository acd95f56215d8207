"""
Per-participant completed days for habit challenges. Pure functions.

challenge["participants"] is a list of {"user_id": str, "completed_days": [day_key, ...]}.
Functions return updated copies and never modify their input.
"""
import copy

from ..errors import InvalidInput, NotFound
from .days import normalize_day_key


def find_participant(challenge: dict, user_id: str) -> dict | None:
    for p in challenge.get("participants") or []:
        if p.get("user_id") == user_id:
            return p
    return None


def participant_day_keys(participant: dict | None) -> set[str]:
    if not participant:
        return set()
    return {normalize_day_key(d) for d in participant.get("completed_days") or [] if d}


def _unique_keys(day_keys) -> list[str]:
    seen: list[str] = []
    for d in day_keys:
        key = normalize_day_key(d)
        if key not in seen:
            seen.append(key)
    return seen


def set_completed_days(challenge: dict, user_id: str, day_keys) -> tuple[dict, dict]:
    """Overwrite the participant's completed days. Raises NotFound for non-participants."""
    if find_participant(challenge, user_id) is None:
        raise NotFound("Participant not found in this challenge")
    updated = copy.deepcopy(challenge)
    participant = find_participant(updated, user_id)
    participant["completed_days"] = _unique_keys(day_keys)
    return updated, participant


def add_participant(challenge: dict, user_id: str) -> dict:
    if find_participant(challenge, user_id) is not None:
        raise InvalidInput("You have already joined this challenge")
    updated = copy.deepcopy(challenge)
    updated.setdefault("participants", []).append({"user_id": user_id, "completed_days": []})
    return updated


def is_day_completed(challenge: dict, user_id: str, day_key: str) -> bool:
    return normalize_day_key(day_key) in participant_day_keys(find_participant(challenge, user_id))
