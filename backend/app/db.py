import logging
import re
from functools import lru_cache

from supabase import create_client, Client

from . import config

logger = logging.getLogger(__name__)

# Columns owned by the XP/ledger path; written only through compare-and-swap.
USER_LEDGER_FIELDS = (
    "xp",
    "daily_checklists",
    "xp_daily_bonus_dates",
    "streak_milestones_awarded",
    "watched_challenges",
)
CHALLENGE_FIELDS = (
    "title", "description", "image_url", "privacy", "challenge_type",
    "frequency", "start_date", "end_date", "owner", "participants", "actions",
)
PUBLIC_USER_COLUMNS = "id, name, avatar_url"


@lru_cache(maxsize=1)
def get_client() -> Client:
    return create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY)


def _first(res) -> dict | None:
    return res.data[0] if res.data else None


def _prefix_pattern(prefix: str) -> str:
    # PostgREST filter syntax characters and LIKE wildcards are stripped
    return re.sub(r"[%_,()*\\]", "", prefix.strip()) + "%"


# ── Users ─────────────────────────────────────────────────────────────────────

def get_user(db: Client, user_id: str) -> dict | None:
    return _first(db.table("users").select("*").eq("id", user_id).execute())


def get_user_by_name(db: Client, name: str) -> dict | None:
    return _first(db.table("users").select("*").eq("name", name).execute())


def get_user_by_email(db: Client, email: str) -> dict | None:
    return _first(db.table("users").select("*").eq("email", email.lower()).execute())


def get_users_by_names(db: Client, names: list[str]) -> list[dict]:
    if not names:
        return []
    res = db.table("users").select(PUBLIC_USER_COLUMNS).in_("name", names).execute()
    return res.data or []


def get_users_by_ids(db: Client, user_ids: list[str]) -> list[dict]:
    if not user_ids:
        return []
    res = db.table("users").select(PUBLIC_USER_COLUMNS).in_("id", user_ids).execute()
    return res.data or []


def search_users(db: Client, prefix: str, limit: int = 10) -> list[dict]:
    res = (
        db.table("users")
        .select(PUBLIC_USER_COLUMNS)
        .ilike("name", _prefix_pattern(prefix))
        .order("name")
        .limit(limit)
        .execute()
    )
    return res.data or []


def get_watchers(db: Client, challenge_id: str) -> list[dict]:
    res = db.table("users").select("id").contains("watched_challenges", [challenge_id]).execute()
    return res.data or []


def insert_user(db: Client, row: dict) -> dict:
    defaults = {
        "xp": 0,
        "daily_checklists": [],
        "xp_daily_bonus_dates": [],
        "streak_milestones_awarded": [],
        "watched_challenges": [],
        "push_subscription": None,
        "version": 1,
    }
    res = db.table("users").insert({**defaults, **row}).execute()
    return res.data[0]


def update_user_fields(db: Client, user_id: str, fields: dict) -> dict | None:
    """Plain update for columns outside the ledger (profile, push, password)."""
    return _first(db.table("users").update(fields).eq("id", user_id).execute())


def replace_user(db: Client, user: dict, expected_version: int) -> bool:
    """
    Compare-and-swap write of the ledger columns.
    Returns False when the stored version moved on (another writer won).
    """
    payload = {k: user.get(k) for k in USER_LEDGER_FIELDS}
    payload["version"] = expected_version + 1
    res = (
        db.table("users")
        .update(payload)
        .eq("id", user["id"])
        .eq("version", expected_version)
        .execute()
    )
    if not res.data:
        return False
    user["version"] = expected_version + 1
    return True


def get_user_by_reset_digest(db: Client, digest: str) -> dict | None:
    return _first(db.table("users").select("*").eq("reset_password_token", digest).execute())


# ── Challenges ────────────────────────────────────────────────────────────────

def _participant_ids(challenge: dict) -> list[str]:
    return [p["user_id"] for p in challenge.get("participants") or [] if p.get("user_id")]


def get_challenge(db: Client, challenge_id: str) -> dict | None:
    return _first(db.table("challenges").select("*").eq("id", challenge_id).execute())


def list_challenges(db: Client, viewer_id: str, title_prefix: str | None = None, limit: int = 100) -> list[dict]:
    query = db.table("challenges").select("*").or_(f"privacy.eq.public,owner.eq.{viewer_id}")
    if title_prefix:
        query = query.ilike("title", _prefix_pattern(title_prefix))
    return query.order("created_at", desc=True).limit(limit).execute().data or []


def challenges_for_user(db: Client, user_id: str) -> list[dict]:
    res = (
        db.table("challenges")
        .select("*")
        .or_(f"owner.eq.{user_id},participant_ids.cs.{{{user_id}}}")
        .order("created_at", desc=True)
        .execute()
    )
    return res.data or []


def habit_challenges_for_user(db: Client, user_id: str) -> list[dict]:
    res = (
        db.table("challenges")
        .select("id, challenge_type, participants")
        .eq("challenge_type", "habit")
        .contains("participant_ids", [user_id])
        .execute()
    )
    return res.data or []


def get_challenges_by_ids(db: Client, challenge_ids: list[str]) -> list[dict]:
    if not challenge_ids:
        return []
    return db.table("challenges").select("*").in_("id", challenge_ids).execute().data or []


def insert_challenge(db: Client, challenge: dict) -> dict:
    row = {k: challenge.get(k) for k in CHALLENGE_FIELDS}
    row["participant_ids"] = _participant_ids(challenge)
    row["version"] = 1
    return db.table("challenges").insert(row).execute().data[0]


def replace_challenge(db: Client, challenge: dict, expected_version: int) -> bool:
    payload = {k: challenge.get(k) for k in CHALLENGE_FIELDS}
    payload["participant_ids"] = _participant_ids(challenge)
    payload["version"] = expected_version + 1
    res = (
        db.table("challenges")
        .update(payload)
        .eq("id", challenge["id"])
        .eq("version", expected_version)
        .execute()
    )
    if not res.data:
        return False
    challenge["version"] = expected_version + 1
    return True


def save_habit_completion(db: Client, challenge: dict, challenge_version: int, user: dict, user_version: int) -> bool:
    """Writes participants and the user's XP columns in one transaction (see schema.sql)."""
    try:
        res = db.rpc("save_habit_completion", {
            "p_challenge_id": challenge["id"],
            "p_challenge_version": challenge_version,
            "p_participants": challenge.get("participants") or [],
            "p_participant_ids": _participant_ids(challenge),
            "p_user_id": user["id"],
            "p_user_version": user_version,
            "p_xp": user.get("xp") or 0,
            "p_streak_milestones_awarded": user.get("streak_milestones_awarded") or [],
        }).execute()
    except Exception as e:
        # The function raises 40001 when only the user row lost the race;
        # the transaction is rolled back, so this is an ordinary CAS miss.
        if "40001" in str(e) or "version conflict" in str(e).lower():
            return False
        raise
    if not res.data:
        return False
    challenge["version"] = challenge_version + 1
    user["version"] = user_version + 1
    return True


def delete_challenge(db: Client, challenge_id: str) -> None:
    db.table("challenges").delete().eq("id", challenge_id).execute()


# ── Comments ──────────────────────────────────────────────────────────────────

def get_comment(db: Client, comment_id: str) -> dict | None:
    return _first(db.table("comments").select("*").eq("id", comment_id).execute())


def get_comments_for_challenge(db: Client, challenge_id: str) -> list[dict]:
    res = db.table("comments").select("*").eq("challenge_id", challenge_id).order("created_at").execute()
    return res.data or []


def insert_comment(db: Client, row: dict) -> dict:
    return db.table("comments").insert(row).execute().data[0]


def delete_comments(db: Client, comment_ids: list[str]) -> None:
    db.table("comments").delete().in_("id", comment_ids).execute()


# ── Notifications ─────────────────────────────────────────────────────────────

def insert_notifications(db: Client, rows: list[dict]) -> list[dict]:
    if not rows:
        return []
    return db.table("notifications").insert(rows).execute().data or []


def list_notifications(db: Client, user_id: str, limit: int = 50, unread_only: bool = False) -> list[dict]:
    query = db.table("notifications").select("*").eq("user_id", user_id)
    if unread_only:
        query = query.eq("read", False)
    return query.order("created_at", desc=True).limit(limit).execute().data or []


def count_unread_notifications(db: Client, user_id: str) -> int:
    res = (
        db.table("notifications")
        .select("id", count="exact")
        .eq("user_id", user_id)
        .eq("read", False)
        .execute()
    )
    return res.count or 0


def get_notification(db: Client, notification_id: str) -> dict | None:
    return _first(db.table("notifications").select("*").eq("id", notification_id).execute())


def mark_notification_read(db: Client, notification_id: str) -> dict | None:
    return _first(db.table("notifications").update({"read": True}).eq("id", notification_id).execute())


def mark_all_notifications_read(db: Client, user_id: str) -> int:
    res = db.table("notifications").update({"read": True}).eq("user_id", user_id).eq("read", False).execute()
    return len(res.data or [])


def delete_notification(db: Client, notification_id: str) -> None:
    db.table("notifications").delete().eq("id", notification_id).execute()
