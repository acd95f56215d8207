"""
Coalesce duplicate same-day checklist entries for a user.

Older clients could write several entries for one day; the API now keeps one
per day on write, but rows written before that still carry the duplicates.
Keeps the most recently dated entry per UTC day. Safe to run multiple times.

Usage:
    cd backend
    SUPABASE_URL=... SUPABASE_SERVICE_KEY=... python scripts/dedupe_checklists.py <user_id> [--dry-run]
"""
import os
import sys

# Add project root to path so we can import app modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.db import get_client, get_user, replace_user
from app.engine.checklist import dedupe_by_day
from app.engine.days import parse_instant, resolve_day_key


def plan(checklists: list[dict]) -> tuple[list[dict], dict[str, int]]:
    """Returns (deduped checklists, {day_key: entries_dropped})."""
    counts: dict[str, int] = {}
    for entry in checklists:
        if parse_instant(entry.get("date")) is None:
            continue
        key = resolve_day_key(entry["date"])
        counts[key] = counts.get(key, 0) + 1
    dropped = {k: n - 1 for k, n in counts.items() if n > 1}
    return dedupe_by_day(checklists), dropped


def run(user_id: str, dry_run: bool = False):
    print(f"\n🔍 Deduplicating checklists for user: {user_id[:8]}...\n")

    db = get_client()
    user = get_user(db, user_id)
    if not user:
        print(f"❌ User not found: {user_id}")
        sys.exit(1)
    print(f"  Name: {user['name']}")

    checklists = user.get("daily_checklists") or []
    deduped, dropped = plan(checklists)
    print(f"  Entries: {len(checklists)} stored, {len(deduped)} after dedupe")

    if not dropped:
        print("  No duplicate days — nothing to do.")
        return

    for day_key, n in sorted(dropped.items()):
        print(f"    {day_key}: dropping {n} older entr{'y' if n == 1 else 'ies'}")

    if dry_run:
        print("\n  DRY RUN — no changes written.")
        return

    user["daily_checklists"] = deduped
    if not replace_user(db, user, user.get("version") or 1):
        print("\n❌ User was modified while running — try again.")
        sys.exit(1)
    print(f"\n✅ Checklists deduplicated for {user['name']}!\n")


if __name__ == "__main__":
    args = [a for a in sys.argv[1:] if a != "--dry-run"]
    dry = "--dry-run" in sys.argv

    if not args:
        print("Usage: python scripts/dedupe_checklists.py <user_id> [--dry-run]")
        sys.exit(1)

    run(args[0], dry_run=dry)
