"""
Daily checklist ledger — pure functions, no DB access.

A user's `daily_checklists` is a list of {"date": iso_instant, "tasks": [...]}.
At most one entry per calendar day is kept on write.
"""
from datetime import datetime

from .days import DayRange, parse_instant, resolve_day_key


def done_count(tasks: list[dict] | None) -> int:
    return sum(1 for t in (tasks or []) if t.get("done"))


def all_done(tasks: list[dict] | None) -> bool:
    return bool(tasks) and all(t.get("done") for t in tasks)


def _entry_instant(entry: dict) -> datetime | None:
    return parse_instant(entry.get("date"))


def _latest(indexed: list[tuple[int, dict]]) -> dict | None:
    """Most recently dated entry; on equal dates the one stored last wins."""
    if not indexed:
        return None
    return max(indexed, key=lambda pair: (_entry_instant(pair[1]), pair[0]))[1]


def entries_in_range(checklists: list[dict], day_range: DayRange) -> list[tuple[int, dict]]:
    found = []
    for i, entry in enumerate(checklists or []):
        instant = _entry_instant(entry)
        if instant is not None and day_range.contains(instant):
            found.append((i, entry))
    return found


def entry_for_range(checklists: list[dict], day_range: DayRange) -> dict | None:
    return _latest(entries_in_range(checklists, day_range))


def upsert_day(
    checklists: list[dict],
    tasks: list[dict],
    day_range: DayRange,
) -> tuple[list[dict], dict, int]:
    """
    Replace the day's entry with `tasks`.
    Returns (new_checklists, new_entry, newly_completed_count).

    Every entry falling in the day is dropped, so legacy duplicates are
    coalesced; the most recent one is the baseline for the done-count diff.
    """
    same_day = entries_in_range(checklists, day_range)
    previous = _latest(same_day)
    dropped = {i for i, _ in same_day}

    new_entry = {
        "date": day_range.start.isoformat(),
        "tasks": [{"title": t["title"], "done": bool(t.get("done"))} for t in tasks],
    }
    kept = [e for i, e in enumerate(checklists or []) if i not in dropped]
    kept.append(new_entry)

    newly_completed = max(0, done_count(tasks) - done_count(previous["tasks"] if previous else None))
    return kept, new_entry, newly_completed


def _day_key(entry: dict, tz_offset_minutes) -> str | None:
    instant = _entry_instant(entry)
    if instant is None:
        return None
    try:
        return resolve_day_key(instant, tz_offset_minutes)
    except ValueError:
        # no calendar day in this frame (year 1 pushed earlier)
        return None


def _canonical_by_key(checklists: list[dict], tz_offset_minutes) -> dict[str, dict]:
    grouped: dict[str, list[tuple[int, dict]]] = {}
    for i, entry in enumerate(checklists or []):
        key = _day_key(entry, tz_offset_minutes)
        if key is None:
            continue
        grouped.setdefault(key, []).append((i, entry))
    return {key: _latest(entries) for key, entries in grouped.items()}


def history(checklists: list[dict], tz_offset_minutes=None) -> list[dict]:
    """One entry per client-local day, newest day first."""
    canonical = _canonical_by_key(checklists, tz_offset_minutes)
    return [
        {"date": key, "tasks": canonical[key].get("tasks") or []}
        for key in sorted(canonical, reverse=True)
    ]


def completed_day_keys(checklists: list[dict], tz_offset_minutes=None) -> set[str]:
    """Day keys whose canonical entry has at least one done task."""
    return {
        key for key, entry in _canonical_by_key(checklists, tz_offset_minutes).items()
        if done_count(entry.get("tasks")) > 0
    }


def dedupe_by_day(checklists: list[dict], tz_offset_minutes=None) -> list[dict]:
    """Coalesce same-day entries, keeping the canonical one, in date order.
    Entries without a day key are kept as they are, at the end."""
    canonical = _canonical_by_key(checklists, tz_offset_minutes)
    undated = [e for e in checklists or [] if _day_key(e, tz_offset_minutes) is None]
    return sorted(canonical.values(), key=_entry_instant) + undated
