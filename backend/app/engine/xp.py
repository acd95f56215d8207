"""
XP award rules — pure functions over a working copy of the user row.
The caller persists the row together with the ledger write that triggered it.
"""
TASK_XP = 5
DAILY_BONUS_XP = 50
HABIT_DAY_XP = 5

# threshold (days) -> one-time bonus
STREAK_MILESTONES: dict[int, int] = {
    7: 50,
}


def _add_xp(user: dict, delta: int) -> int:
    user["xp"] = max(0, (user.get("xp") or 0) + delta)
    return delta


def apply_completion_delta(user: dict, newly_completed: int) -> int:
    """+5 per newly completed task. Dedup is the ledger's job, not ours."""
    return _add_xp(user, max(0, newly_completed) * TASK_XP)


def apply_daily_bonus(user: dict, day_key: str) -> tuple[bool, int]:
    """+50 once per day key. Returns (awarded, delta)."""
    awarded_days = list(user.get("xp_daily_bonus_dates") or [])
    if day_key in awarded_days:
        return False, 0
    awarded_days.append(day_key)
    user["xp_daily_bonus_dates"] = awarded_days
    return True, _add_xp(user, DAILY_BONUS_XP)


def apply_streak_milestone(user: dict, streak: int) -> int:
    """Pays each reached milestone once. Returns the total delta."""
    paid = list(user.get("streak_milestones_awarded") or [])
    delta = 0
    for threshold, bonus in sorted(STREAK_MILESTONES.items()):
        if streak >= threshold and threshold not in paid:
            paid.append(threshold)
            delta += bonus
    if delta:
        user["streak_milestones_awarded"] = paid
        _add_xp(user, delta)
    return delta


def apply_habit_day_first_completion(user: dict, was_completed: bool, is_completed: bool) -> int:
    if was_completed or not is_completed:
        return 0
    return _add_xp(user, HABIT_DAY_XP)
