"""
Outbound push and email. Fire-and-forget: callers go through `send_safely`,
so a failed dispatch is logged and never reaches the request that caused it.
"""
import logging
from html import escape

import httpx

from . import config
from .errors import DependencyFailure

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
TIMEOUT_S = 5.0

# A dispatcher answering with one of these means the browser subscription is dead.
GONE_STATUSES = {403, 404, 410}

# Highest wins when one user qualifies for several kinds on the same comment.
KIND_PRIORITY = {"mention": 3, "reply": 2, "comment": 1}


class SubscriptionGone(DependencyFailure):
    pass


class Notifier:
    def send(self, subscription: dict, payload: dict) -> None:
        raise NotImplementedError


class NoopNotifier(Notifier):
    def send(self, subscription: dict, payload: dict) -> None:
        return


class PushDispatcher(Notifier):
    """Hands web-push messages to the external dispatcher that owns VAPID signing."""

    def __init__(self, dispatch_url: str, vapid_public_key: str, contact: str) -> None:
        self.dispatch_url = dispatch_url
        self.vapid_public_key = vapid_public_key
        self.contact = contact

    def send(self, subscription: dict, payload: dict) -> None:
        body = {
            "subscription": subscription,
            "payload": payload,
            "vapid": {"public_key": self.vapid_public_key, "subject": self.contact},
        }
        try:
            res = httpx.post(self.dispatch_url, json=body, timeout=TIMEOUT_S)
        except httpx.HTTPError as e:
            raise DependencyFailure(f"push dispatch failed: {e}") from e
        if res.status_code in GONE_STATUSES:
            raise SubscriptionGone(f"push subscription rejected ({res.status_code})")
        if res.status_code >= 400:
            raise DependencyFailure(f"push dispatch returned {res.status_code}")


class EmailSender:
    def send(self, to: str, subject: str, html: str, text: str) -> None:
        raise NotImplementedError


class NoopEmailSender(EmailSender):
    def send(self, to: str, subject: str, html: str, text: str) -> None:
        logger.info("Email not configured; dropping '%s' to %s", subject, to)


class ResendEmailSender(EmailSender):
    def __init__(self, api_key: str, from_email: str) -> None:
        self.api_key = api_key
        self.from_email = from_email

    def send(self, to: str, subject: str, html: str, text: str) -> None:
        try:
            res = httpx.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.from_email, "to": [to], "subject": subject, "html": html, "text": text},
                timeout=TIMEOUT_S,
            )
        except httpx.HTTPError as e:
            raise DependencyFailure(f"email send failed: {e}") from e
        if res.status_code >= 400:
            raise DependencyFailure(f"email API returned {res.status_code}: {res.text[:200]}")


def get_push_notifier() -> Notifier:
    if not config.push_enabled():
        return NoopNotifier()
    return PushDispatcher(config.PUSH_DISPATCH_URL, config.VAPID_PUBLIC_KEY, config.VAPID_CONTACT_EMAIL)


def get_email_sender() -> EmailSender:
    if not config.RESEND_API_KEY:
        return NoopEmailSender()
    return ResendEmailSender(config.RESEND_API_KEY, config.FROM_EMAIL)


def send_safely(what: str, fn, *args, **kwargs) -> bool:
    """Run a dispatch call, logging instead of raising. Returns True on success."""
    try:
        fn(*args, **kwargs)
        return True
    except DependencyFailure as e:
        logger.warning("%s failed: %s", what, e.detail)
    except Exception:
        logger.exception("%s failed unexpectedly", what)
    return False


def push_payload(kind: str, from_name: str, challenge_title: str, challenge_id: str) -> dict:
    titles = {
        "mention": f"{from_name} mentioned you",
        "comment": f"{from_name} commented on your challenge",
        "reply": f"{from_name} replied to you",
    }
    return {
        "title": titles.get(kind, "New notification"),
        "body": challenge_title,
        "icon": "/icons/icon.png",
        "badge": "/icons/icon.png",
        "tag": f"{kind}-{challenge_id}",
        "data": {"challenge_id": challenge_id, "type": kind},
    }


def build_comment_notifications(
    comment: dict,
    challenge: dict,
    parent: dict | None,
    mentioned_ids: list[str],
    watcher_ids: list[str],
) -> list[dict]:
    """One notification row per recipient; the author is never notified."""
    author_id = comment["author_id"]
    kinds: dict[str, str] = {}

    def offer(user_id: str | None, kind: str) -> None:
        if not user_id or user_id == author_id:
            return
        if KIND_PRIORITY[kind] > KIND_PRIORITY.get(kinds.get(user_id), 0):
            kinds[user_id] = kind

    offer(challenge.get("owner"), "comment")
    for watcher_id in watcher_ids:
        offer(watcher_id, "comment")
    if parent is not None:
        offer(parent.get("author_id"), "reply")
    for user_id in mentioned_ids:
        offer(user_id, "mention")

    root_id = comment.get("root_id") or comment["id"]
    return [
        {
            "user_id": user_id,
            "type": kind,
            "challenge_id": challenge["id"],
            "comment_id": root_id,
            "reply_id": comment["id"] if parent is not None else None,
            "from_user_id": author_id,
            "read": False,
        }
        for user_id, kind in kinds.items()
    ]


def password_reset_email(user_name: str, reset_link: str) -> tuple[str, str, str]:
    """Returns (subject, html, text)."""
    subject = "Reset Your Password - ChallengeMe"
    text = (
        f"Hello {user_name},\n\n"
        "We received a request to reset your password for your ChallengeMe account.\n\n"
        f"Reset it here: {reset_link}\n\n"
        f"This link expires in {config.PASSWORD_RESET_TTL_MINUTES} minutes. "
        "If you didn't request a reset, ignore this email.\n"
    )
    html = (
        f"<p>Hello {escape(user_name)},</p>"
        "<p>We received a request to reset your password for your ChallengeMe account.</p>"
        f'<p><a href="{reset_link}">Reset Password</a></p>'
        f"<p>This link expires in {config.PASSWORD_RESET_TTL_MINUTES} minutes. "
        "If you didn't request a reset, ignore this email.</p>"
    )
    return subject, html, text
