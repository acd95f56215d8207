"""
Streak evaluation — pure functions, no DB access.
"""
from .checklist import completed_day_keys
from .completions import find_participant, participant_day_keys
from .days import shift_day_key


def activity_day_keys(
    checklists: list[dict],
    habit_challenges: list[dict],
    user_id: str,
    tz_offset_minutes=None,
) -> set[str]:
    """Days with a done checklist task or a habit completion by the user."""
    days = completed_day_keys(checklists, tz_offset_minutes)
    for challenge in habit_challenges:
        if challenge.get("challenge_type", "habit") != "habit":
            continue
        days |= participant_day_keys(find_participant(challenge, user_id))
    return days


def current_streak(
    checklists: list[dict],
    habit_challenges: list[dict],
    user_id: str,
    as_of_day: str,
    tz_offset_minutes=None,
    max_lookback: int = 365,
) -> int:
    """
    Consecutive completed days ending at `as_of_day` (inclusive).
    Re-derived from both sources on every call; stops at the first gap.
    """
    days = activity_day_keys(checklists, habit_challenges, user_id, tz_offset_minutes)
    streak = 0
    day = as_of_day
    while streak < max_lookback and day in days:
        streak += 1
        day = shift_day_key(day, -1)
    return streak
