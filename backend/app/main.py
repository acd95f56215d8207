"""
ChallengeMe — FastAPI backend
"""
import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Depends, Request, BackgroundTasks, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from . import config
from .auth import (
    get_user_id, hash_password, verify_password, create_access_token,
    make_reset_token, hash_reset_token,
)
from .db import (
    get_client, get_user, get_user_by_name, get_user_by_email, get_users_by_names,
    get_users_by_ids, search_users, get_watchers, insert_user, update_user_fields,
    replace_user, get_user_by_reset_digest,
    get_challenge, list_challenges, challenges_for_user, habit_challenges_for_user,
    get_challenges_by_ids, insert_challenge, replace_challenge, save_habit_completion,
    delete_challenge,
    get_comment, get_comments_for_challenge, insert_comment, delete_comments,
    insert_notifications, list_notifications, count_unread_notifications,
    get_notification, mark_notification_read, mark_all_notifications_read,
    delete_notification,
)
from .engine.checklist import upsert_day, entry_for_range, history, all_done
from .engine.comments import child_depth, extract_mentions, build_thread, collect_descendants
from .engine.completions import (
    find_participant, add_participant, set_completed_days, is_day_completed,
)
from .engine.days import resolve_day_range, resolve_day_key, frame_offset, parse_instant
from .engine.streak import current_streak
from .engine.xp import (
    apply_completion_delta, apply_daily_bonus, apply_streak_milestone,
    apply_habit_day_first_completion,
)
from .errors import AppError, NotFound, InvalidInput, Unauthorized, Conflict, DependencyFailure
from .models import (
    UserRegister, UserLogin, ProfilePatch, ForgotPassword, ResetPassword,
    ChecklistUpdate, ChallengeBody, CompletedDaysUpdate, CommentCreate, PushSubscribe, is_uuid4,
)
from .notify import (
    SubscriptionGone, get_push_notifier, get_email_sender, send_safely,
    push_payload, build_comment_notifications, password_reset_email,
)

logging.basicConfig(level=config.LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    for warning in config.vapid_key_warnings():
        logger.warning("[push] %s", warning)
    yield


limiter = Limiter(key_func=get_remote_address)
app = FastAPI(title="ChallengeMe API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Client-Date", "X-Timezone-Offset"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.get("/health")
def health():
    try:
        db = get_client()
        db.table("users").select("id").limit(1).execute()
        return {"status": "ok", "db": "ok"}
    except Exception as e:
        logger.error("Health check DB failure: %s", e)
        raise HTTPException(status_code=503, detail="DB unavailable")


# ── Client day hints ──────────────────────────────────────────────────────────

def client_day_hints(
    x_client_date: Optional[str] = Header(None),
    x_timezone_offset: Optional[str] = Header(None),
) -> tuple[Optional[str], Optional[str]]:
    """Both optional; anything unusable falls back to the UTC day downstream."""
    return x_client_date, x_timezone_offset


# ── Auth ──────────────────────────────────────────────────────────────────────

@app.post("/api/auth/register", status_code=201)
@limiter.limit("10/minute")
def register(request: Request, body: UserRegister):
    db = get_client()
    if get_user_by_name(db, body.name):
        raise Conflict("A user with this name already exists")
    if get_user_by_email(db, body.email):
        raise Conflict("A user with this email already exists")
    user = insert_user(db, {
        "name": body.name,
        "email": body.email.lower(),
        "password_hash": hash_password(body.password),
        "avatar_url": body.avatar_url,
    })
    logger.info("User registered: %s (%s)", user["id"][:8], user["name"])
    return {"token": create_access_token(user["id"], user["name"]), "user": _public_user(user)}


@app.post("/api/auth/login")
@limiter.limit("10/minute")
def login(request: Request, body: UserLogin):
    db = get_client()
    user = get_user_by_name(db, body.name)
    if not user and "@" in body.name:
        user = get_user_by_email(db, body.name)
    if not user or not verify_password(body.password, user.get("password_hash")):
        raise HTTPException(status_code=401, detail="Invalid name or password")
    return {"token": create_access_token(user["id"], user["name"]), "user": _public_user(user)}


@app.get("/api/auth/profile")
def get_profile(user_id: str = Depends(get_user_id)):
    return {"user": _public_user(_load_user(get_client(), user_id))}


@app.put("/api/auth/profile")
def update_profile(body: ProfilePatch, user_id: str = Depends(get_user_id)):
    db = get_client()
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise InvalidInput("No valid fields provided for update")
    if "name" in updates:
        existing = get_user_by_name(db, updates["name"])
        if existing and existing["id"] != user_id:
            raise Conflict("A user with this name already exists")
    user = update_user_fields(db, user_id, updates)
    if not user:
        raise NotFound("User not found")
    return {"user": _public_user(user)}


@app.post("/api/auth/forgot-password")
@limiter.limit("5/minute")
def forgot_password(request: Request, body: ForgotPassword, background: BackgroundTasks):
    db = get_client()
    user = get_user_by_email(db, body.email)
    if user:
        token, digest = make_reset_token()
        expires = datetime.now(timezone.utc) + timedelta(minutes=config.PASSWORD_RESET_TTL_MINUTES)
        update_user_fields(db, user["id"], {
            "reset_password_token": digest,
            "reset_password_expires": expires.isoformat(),
        })
        link = f"{config.FRONTEND_URL}/reset-password?token={token}"
        subject, html, text = password_reset_email(user["name"], link)
        background.add_task(send_safely, "password reset email", get_email_sender().send,
                            user["email"], subject, html, text)
    # same response whether or not the email is registered
    return {"message": "If that email is registered, a reset link has been sent"}


@app.post("/api/auth/reset-password")
@limiter.limit("10/minute")
def reset_password(request: Request, body: ResetPassword):
    db = get_client()
    user = get_user_by_reset_digest(db, hash_reset_token(body.token))
    expires = user and user.get("reset_password_expires")
    if not user or not parse_instant(expires) or parse_instant(expires) < datetime.now(timezone.utc):
        raise InvalidInput("Reset link is invalid or has expired")
    update_user_fields(db, user["id"], {
        "password_hash": hash_password(body.password),
        "reset_password_token": None,
        "reset_password_expires": None,
    })
    logger.info("Password reset for %s...", user["id"][:8])
    return {"message": "Password has been reset"}


# ── Users ─────────────────────────────────────────────────────────────────────

@app.get("/api/users/me")
def get_me(user_id: str = Depends(get_user_id), hints: tuple = Depends(client_day_hints)):
    db = get_client()
    user = _load_user(db, user_id)
    client_day, tz_offset = hints
    day_range = resolve_day_range(client_day, tz_offset)
    offset = frame_offset(day_range, tz_offset)
    today = resolve_day_key(day_range.start, offset)
    streak = current_streak(
        user.get("daily_checklists") or [], habit_challenges_for_user(db, user_id), user_id, today, offset,
    )
    return {**_public_user(user), "current_streak": streak, "today": today}


@app.get("/api/users")
def find_users(q: str = Query(..., min_length=1, max_length=30), user_id: str = Depends(get_user_id)):
    return {"users": search_users(get_client(), q)}


@app.get("/api/users/me/watched")
def get_watched(user_id: str = Depends(get_user_id)):
    db = get_client()
    user = _load_user(db, user_id)
    challenges = get_challenges_by_ids(db, user.get("watched_challenges") or [])
    return {"challenges": [c for c in challenges if _can_view(c, user_id)]}


# ── Daily checklists ──────────────────────────────────────────────────────────

@app.get("/api/checklists/today")
def get_today_checklist(user_id: str = Depends(get_user_id), hints: tuple = Depends(client_day_hints)):
    return _read_checklist(user_id, hints, day_offset=0)


@app.get("/api/checklists/tomorrow")
def get_tomorrow_checklist(user_id: str = Depends(get_user_id), hints: tuple = Depends(client_day_hints)):
    return _read_checklist(user_id, hints, day_offset=1)


@app.put("/api/checklists/today")
@limiter.limit("60/minute")
def update_today_checklist(
    request: Request,
    body: ChecklistUpdate,
    user_id: str = Depends(get_user_id),
    hints: tuple = Depends(client_day_hints),
):
    return _save_checklist(get_client(), user_id, [t.model_dump() for t in body.tasks], hints, day_offset=0)


@app.put("/api/checklists/tomorrow")
@limiter.limit("60/minute")
def update_tomorrow_checklist(
    request: Request,
    body: ChecklistUpdate,
    user_id: str = Depends(get_user_id),
    hints: tuple = Depends(client_day_hints),
):
    return _save_checklist(get_client(), user_id, [t.model_dump() for t in body.tasks], hints, day_offset=1)


@app.get("/api/checklists/history")
def get_checklist_history(user_id: str = Depends(get_user_id), hints: tuple = Depends(client_day_hints)):
    user = _load_user(get_client(), user_id)
    client_day, tz_offset = hints
    offset = frame_offset(resolve_day_range(client_day, tz_offset), tz_offset)
    return {"history": history(user.get("daily_checklists") or [], offset)}


# ── Challenges ────────────────────────────────────────────────────────────────

@app.post("/api/challenges", status_code=201)
@limiter.limit("30/minute")
def create_challenge(request: Request, body: ChallengeBody, user_id: str = Depends(get_user_id)):
    db = get_client()
    challenge = _challenge_fields(body)
    challenge["owner"] = user_id
    seed_days = body.completed_days if body.challenge_type == "habit" and body.completed_days else []
    challenge["participants"] = [{"user_id": user_id, "completed_days": list(dict.fromkeys(seed_days))}]
    created = insert_challenge(db, challenge)
    logger.info("Challenge created: %s by %s...", created["id"][:8], user_id[:8])
    return {"message": "Challenge created successfully", "challenge": created}


@app.get("/api/challenges")
def get_challenges(
    q: Optional[str] = Query(None, max_length=200),
    user_id: str = Depends(get_user_id),
):
    db = get_client()
    return {"challenges": _with_names(db, list_challenges(db, user_id, q))}


@app.get("/api/challenges/user/{profile_user_id}")
def get_user_challenges(profile_user_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()
    _require_id(profile_user_id, "User")
    challenges = [c for c in challenges_for_user(db, profile_user_id) if _can_view(c, user_id)]
    return {"challenges": _with_names(db, challenges)}


@app.get("/api/challenges/{challenge_id}")
def get_challenge_detail(challenge_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()
    challenge = _load_visible_challenge(db, challenge_id, user_id)
    return {"challenge": _with_names(db, [challenge])[0]}


@app.put("/api/challenges/{challenge_id}")
def update_challenge(
    challenge_id: str,
    body: ChallengeBody,
    user_id: str = Depends(get_user_id),
    hints: tuple = Depends(client_day_hints),
):
    db = get_client()
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        challenge = _load_challenge(db, challenge_id)
        if challenge["owner"] != user_id:
            raise Unauthorized("Only the owner can edit this challenge")
        updated = {**copy.deepcopy(challenge), **_challenge_fields(body)}
        if replace_challenge(db, updated, challenge["version"]):
            break
        logger.warning("CAS conflict on challenge %s... (attempt %d)", challenge_id[:8], attempt)
    else:
        raise Conflict("Challenge was modified concurrently, please retry")

    result: dict[str, Any] = {"message": "Challenge updated successfully", "challenge": updated}
    if body.challenge_type == "habit" and body.completed_days is not None:
        # owner's own days live on their participant entry
        result.update(_save_completed_days(db, challenge_id, user_id, body.completed_days, hints, join_if_missing=True))
    return result


@app.delete("/api/challenges/{challenge_id}")
def remove_challenge(challenge_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()
    challenge = _load_challenge(db, challenge_id)
    if challenge["owner"] != user_id:
        raise Unauthorized("Only the owner can delete this challenge")
    delete_challenge(db, challenge_id)
    logger.info("Challenge deleted: %s...", challenge_id[:8])
    return {"message": "Challenge deleted successfully"}


@app.post("/api/challenges/{challenge_id}/join")
def join_challenge(challenge_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        challenge = _load_visible_challenge(db, challenge_id, user_id)
        updated = add_participant(challenge, user_id)
        if replace_challenge(db, updated, challenge["version"]):
            logger.info("User %s... joined challenge %s...", user_id[:8], challenge_id[:8])
            return {"message": "Successfully joined the challenge", "challenge": updated}
        logger.warning("CAS conflict on challenge %s... (attempt %d)", challenge_id[:8], attempt)
    raise Conflict("Challenge was modified concurrently, please retry")


@app.put("/api/challenges/{challenge_id}/participant/{participant_id}/completedDays")
@limiter.limit("60/minute")
def update_completed_days(
    request: Request,
    challenge_id: str,
    participant_id: str,
    body: CompletedDaysUpdate,
    user_id: str = Depends(get_user_id),
    hints: tuple = Depends(client_day_hints),
):
    if participant_id != user_id:
        raise Unauthorized("You can only update your own completed days")
    result = _save_completed_days(get_client(), challenge_id, user_id, body.completed_days, hints)
    return {"message": "Completed days updated successfully", **result}


@app.post("/api/challenges/{challenge_id}/watch")
def watch_challenge(challenge_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()
    _load_visible_challenge(db, challenge_id, user_id)

    def mutate(user: dict) -> bool:
        watched = list(user.get("watched_challenges") or [])
        if challenge_id in watched:
            return False
        user["watched_challenges"] = watched + [challenge_id]
        return True

    _, changed = _mutate_user(db, user_id, mutate)
    return {"watching": True, "changed": changed}


@app.delete("/api/challenges/{challenge_id}/watch")
def unwatch_challenge(challenge_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()

    def mutate(user: dict) -> bool:
        watched = list(user.get("watched_challenges") or [])
        if challenge_id not in watched:
            return False
        user["watched_challenges"] = [c for c in watched if c != challenge_id]
        return True

    _, changed = _mutate_user(db, user_id, mutate)
    return {"watching": False, "changed": changed}


# ── Comments ──────────────────────────────────────────────────────────────────

@app.get("/api/challenges/{challenge_id}/comments")
def get_comments(challenge_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()
    _load_visible_challenge(db, challenge_id, user_id)
    rows = get_comments_for_challenge(db, challenge_id)
    authors = {u["id"]: u for u in get_users_by_ids(db, list({r["author_id"] for r in rows}))}
    for row in rows:
        author = authors.get(row["author_id"]) or {}
        row["author_name"] = author.get("name", "")
        row["author_avatar_url"] = author.get("avatar_url", "")
    return {"comments": build_thread(rows)}


@app.post("/api/challenges/{challenge_id}/comments", status_code=201)
@limiter.limit("30/minute")
def add_comment(
    request: Request,
    challenge_id: str,
    body: CommentCreate,
    background: BackgroundTasks,
    user_id: str = Depends(get_user_id),
):
    db = get_client()
    challenge = _load_visible_challenge(db, challenge_id, user_id)
    author = _load_user(db, user_id)

    parent = None
    if body.parent_id:
        parent = get_comment(db, _require_id(body.parent_id, "Parent comment"))
        if not parent or parent["challenge_id"] != challenge_id:
            raise NotFound("Parent comment not found")
    depth = child_depth(parent)

    mentioned = [u for u in get_users_by_names(db, extract_mentions(body.text)) if u["id"] != user_id]
    comment = insert_comment(db, {
        "challenge_id": challenge_id,
        "author_id": user_id,
        "parent_id": parent["id"] if parent else None,
        "depth": depth,
        "text": body.text,
        "mentions": [u["id"] for u in mentioned],
    })

    root_id = comment["id"]
    if parent is not None:
        root_id = parent["parent_id"] if parent.get("depth") else parent["id"]
    background.add_task(
        _fan_out_comment_notifications,
        {**comment, "root_id": root_id}, challenge, parent, [u["id"] for u in mentioned], author["name"],
    )
    return {"message": "Comment added", "comment": comment}


@app.delete("/api/comments/{comment_id}")
def remove_comment(comment_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()
    comment = get_comment(db, _require_id(comment_id, "Comment"))
    if not comment:
        raise NotFound("Comment not found")
    if comment["author_id"] != user_id:
        raise Unauthorized("You can only delete your own comments")
    ids = collect_descendants(get_comments_for_challenge(db, comment["challenge_id"]), comment_id)
    delete_comments(db, ids)
    return {"message": "Comment deleted", "deleted": len(ids)}


# ── Notifications ─────────────────────────────────────────────────────────────

@app.get("/api/notifications")
def get_notifications(
    limit: int = Query(50, ge=1, le=100),
    unread_only: bool = False,
    user_id: str = Depends(get_user_id),
):
    db = get_client()
    rows = list_notifications(db, user_id, limit=limit, unread_only=unread_only)
    senders = {u["id"]: u for u in get_users_by_ids(db, list({r["from_user_id"] for r in rows}))}
    for row in rows:
        sender = senders.get(row["from_user_id"]) or {}
        row["from_user_name"] = sender.get("name", "")
        row["from_user_avatar_url"] = sender.get("avatar_url", "")
    return {"notifications": rows}


@app.get("/api/notifications/unread-count")
def get_unread_count(user_id: str = Depends(get_user_id)):
    return {"count": count_unread_notifications(get_client(), user_id)}


@app.put("/api/notifications/read-all")
def read_all_notifications(user_id: str = Depends(get_user_id)):
    updated = mark_all_notifications_read(get_client(), user_id)
    return {"message": "All notifications marked as read", "updated_count": updated}


@app.put("/api/notifications/{notification_id}/read")
def read_notification(notification_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()
    _load_own_notification(db, notification_id, user_id)
    return {"message": "Notification marked as read", "notification": mark_notification_read(db, notification_id)}


@app.delete("/api/notifications/{notification_id}")
def remove_notification(notification_id: str, user_id: str = Depends(get_user_id)):
    db = get_client()
    _load_own_notification(db, notification_id, user_id)
    delete_notification(db, notification_id)
    return {"message": "Notification deleted successfully"}


# ── Push ──────────────────────────────────────────────────────────────────────

@app.get("/api/push/vapid-public-key")
def vapid_public_key():
    if not config.VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    return {"public_key": config.VAPID_PUBLIC_KEY}


@app.post("/api/push/subscribe")
def push_subscribe(body: PushSubscribe, user_id: str = Depends(get_user_id)):
    if not update_user_fields(get_client(), user_id, {"push_subscription": body.subscription.model_dump()}):
        raise NotFound("User not found")
    return {"message": "Push subscription saved successfully"}


@app.post("/api/push/unsubscribe")
def push_unsubscribe(user_id: str = Depends(get_user_id)):
    if not update_user_fields(get_client(), user_id, {"push_subscription": None}):
        raise NotFound("User not found")
    return {"message": "Push subscription removed successfully"}


# ── Helpers ───────────────────────────────────────────────────────────────────

def _public_user(user: dict) -> dict:
    return {
        "id": user["id"],
        "name": user.get("name", ""),
        "email": user.get("email", ""),
        "avatar_url": user.get("avatar_url", ""),
        "xp": user.get("xp", 0),
        "push_enabled": bool(user.get("push_subscription")),
        "created_at": user.get("created_at", ""),
    }


def _load_user(db, user_id: str) -> dict:
    user = get_user(db, user_id)
    if not user:
        raise NotFound("User not found")
    return user


def _mutate_user(db, user_id: str, mutate) -> tuple[dict, Any]:
    """
    Read-modify-write of the user's ledger columns under compare-and-swap.
    `mutate` gets a fresh copy on every attempt, so a retry never reuses
    a stale diff.
    """
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        user = _load_user(db, user_id)
        working = copy.deepcopy(user)
        result = mutate(working)
        if replace_user(db, working, user.get("version") or 1):
            return working, result
        logger.warning("CAS conflict on user %s... (attempt %d)", user_id[:8], attempt)
    raise Conflict("Concurrent update, please retry")


def _read_checklist(user_id: str, hints: tuple, day_offset: int) -> dict:
    user = _load_user(get_client(), user_id)
    client_day, tz_offset = hints
    day_range = resolve_day_range(client_day, tz_offset, day_offset)
    entry = entry_for_range(user.get("daily_checklists") or [], day_range)
    return {
        "date": resolve_day_key(day_range.start, frame_offset(day_range, tz_offset)),
        "tasks": entry["tasks"] if entry else [],
    }


def _save_checklist(db, user_id: str, tasks: list[dict], hints: tuple, day_offset: int) -> dict:
    """Upsert one day's checklist; XP, bonus and streak milestones only for today."""
    client_day, tz_offset = hints
    day_range = resolve_day_range(client_day, tz_offset, day_offset)
    offset = frame_offset(day_range, tz_offset)
    day_key = resolve_day_key(day_range.start, offset)
    scoring = day_offset == 0
    habit_challenges = habit_challenges_for_user(db, user_id) if scoring else []

    def mutate(user: dict) -> dict:
        checklists, entry, newly_completed = upsert_day(user.get("daily_checklists") or [], tasks, day_range)
        user["daily_checklists"] = checklists
        result: dict[str, Any] = {
            "date": day_key,
            "tasks": entry["tasks"],
            "xp_awarded": 0,
            "newly_completed": newly_completed if scoring else 0,
            "daily_bonus": False,
            "streak_bonus": 0,
        }
        if not scoring:
            return result
        task_xp = apply_completion_delta(user, newly_completed)
        bonus_awarded, bonus_xp = (
            apply_daily_bonus(user, day_key) if all_done(entry["tasks"]) else (False, 0)
        )
        streak = current_streak(checklists, habit_challenges, user_id, day_key, offset)
        streak_xp = apply_streak_milestone(user, streak)
        result.update({
            "xp_awarded": task_xp + bonus_xp + streak_xp,
            "daily_bonus": bonus_awarded,
            "streak_bonus": streak_xp,
            "current_streak": streak,
        })
        return result

    user, result = _mutate_user(db, user_id, mutate)
    result["xp"] = user.get("xp", 0)
    if result["xp_awarded"]:
        logger.info("Checklist %s for %s...: +%d XP", day_key, user_id[:8], result["xp_awarded"])
    return result


def _save_completed_days(
    db,
    challenge_id: str,
    user_id: str,
    day_keys: list[str],
    hints: tuple,
    join_if_missing: bool = False,
) -> dict:
    """
    Overwrite a participant's completed days and pay the first completion of
    today; challenge and user rows are written in one transaction.
    """
    client_day, tz_offset = hints
    day_range = resolve_day_range(client_day, tz_offset)
    offset = frame_offset(day_range, tz_offset)
    today = resolve_day_key(day_range.start, offset)

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        challenge = _load_challenge(db, challenge_id)
        if challenge.get("challenge_type") != "habit":
            raise InvalidInput("Completed days only apply to habit challenges")
        user = _load_user(db, user_id)
        if join_if_missing and find_participant(challenge, user_id) is None:
            base = add_participant(challenge, user_id)
        else:
            base = challenge

        was_completed = is_day_completed(base, user_id, today)
        updated, participant = set_completed_days(base, user_id, day_keys)
        now_completed = is_day_completed(updated, user_id, today)

        working = copy.deepcopy(user)
        habit_xp = apply_habit_day_first_completion(working, was_completed, now_completed)
        others = [c for c in habit_challenges_for_user(db, user_id) if c.get("id") != challenge_id]
        streak = current_streak(working.get("daily_checklists") or [], others + [updated], user_id, today, offset)
        streak_xp = apply_streak_milestone(working, streak)

        if save_habit_completion(db, updated, challenge["version"], working, user.get("version") or 1):
            if habit_xp or streak_xp:
                logger.info("Habit %s... for %s...: +%d XP", challenge_id[:8], user_id[:8], habit_xp + streak_xp)
            return {
                "challenge": updated,
                "completed_days": participant["completed_days"],
                "xp_awarded": habit_xp + streak_xp,
                "streak_bonus": streak_xp,
                "current_streak": streak,
                "xp": working.get("xp", 0),
            }
        logger.warning("CAS conflict on habit %s... (attempt %d)", challenge_id[:8], attempt)
    raise Conflict("Concurrent update, please retry")


def _challenge_fields(body: ChallengeBody) -> dict:
    is_habit = body.challenge_type == "habit"
    return {
        "title": body.title,
        "description": body.description,
        "start_date": body.start_date.isoformat(),
        "end_date": body.end_date.isoformat(),
        "image_url": body.image_url,
        "privacy": body.privacy,
        "challenge_type": body.challenge_type,
        "frequency": body.frequency if is_habit else None,
        "actions": [] if is_habit else [a.model_dump() for a in body.actions],
    }


def _require_id(value: str, what: str) -> str:
    # ids are uuid columns; anything else cannot match a row
    if not is_uuid4(value):
        raise NotFound(f"{what} not found")
    return value


def _load_challenge(db, challenge_id: str) -> dict:
    _require_id(challenge_id, "Challenge")
    challenge = get_challenge(db, challenge_id)
    if not challenge:
        raise NotFound("Challenge not found")
    return challenge


def _can_view(challenge: dict, user_id: str) -> bool:
    return (
        challenge.get("privacy", "public") == "public"
        or challenge.get("owner") == user_id
        or find_participant(challenge, user_id) is not None
    )


def _load_visible_challenge(db, challenge_id: str, user_id: str) -> dict:
    challenge = _load_challenge(db, challenge_id)
    if not _can_view(challenge, user_id):
        # private challenges are indistinguishable from missing ones
        raise NotFound("Challenge not found")
    return challenge


def _with_names(db, challenges: list[dict]) -> list[dict]:
    ids = set()
    for c in challenges:
        ids.add(c.get("owner"))
        ids.update(p.get("user_id") for p in c.get("participants") or [])
    names = {u["id"]: u.get("name", "") for u in get_users_by_ids(db, [i for i in ids if i])}
    result = []
    for c in challenges:
        result.append({
            **c,
            "owner_name": names.get(c.get("owner"), ""),
            "participants": [{**p, "name": names.get(p.get("user_id"), "")} for p in c.get("participants") or []],
        })
    return result


def _load_own_notification(db, notification_id: str, user_id: str) -> dict:
    _require_id(notification_id, "Notification")
    notification = get_notification(db, notification_id)
    if not notification or notification["user_id"] != user_id:
        raise NotFound("Notification not found")
    return notification


def _fan_out_comment_notifications(
    comment: dict, challenge: dict, parent: dict | None, mentioned_ids: list[str], from_name: str,
) -> None:
    """Background task: store notification rows and push them. Never raises."""
    db = get_client()
    try:
        watcher_ids = [w["id"] for w in get_watchers(db, challenge["id"])]
        rows = build_comment_notifications(comment, challenge, parent, mentioned_ids, watcher_ids)
        insert_notifications(db, rows)
    except Exception:
        logger.exception("Notification fan-out failed for comment %s", comment.get("id"))
        return

    notifier = get_push_notifier()
    for row in rows:
        payload = push_payload(row["type"], from_name, challenge.get("title", ""), challenge["id"])
        _push_to_user(db, notifier, row["user_id"], payload)


def _push_to_user(db, notifier, user_id: str, payload: dict) -> None:
    try:
        user = get_user(db, user_id)
        subscription = user.get("push_subscription") if user else None
        if not subscription:
            return
        notifier.send(subscription, payload)
    except SubscriptionGone as e:
        logger.info("Dropping dead push subscription for %s...: %s", user_id[:8], e.detail)
        send_safely("clear push subscription", update_user_fields, db, user_id, {"push_subscription": None})
    except DependencyFailure as e:
        logger.warning("Push to %s... failed: %s", user_id[:8], e.detail)
    except Exception:
        logger.exception("Push to %s... failed unexpectedly", user_id[:8])
