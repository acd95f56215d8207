import re
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from .engine.days import is_day_key

NAME_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")
MAX_PASSWORD_BYTES = 72  # bcrypt input limit
UUID4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


def _validate_day_key(v: str) -> str:
    if not is_day_key(v):
        raise ValueError("must be a YYYY-MM-DD date")
    return v


def is_uuid4(v) -> bool:
    return isinstance(v, str) and bool(UUID4_RE.match(v.lower()))


def _validate_password(v: str) -> str:
    if len(v.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
    return v


# ── Auth ──────────────────────────────────────────────────────────────────────

class UserRegister(BaseModel):
    name: str = Field(min_length=1, max_length=30)
    email: EmailStr
    password: str = Field(min_length=6, max_length=MAX_PASSWORD_BYTES)
    avatar_url: str = Field(default="", max_length=500)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        # names are @mention handles
        if not NAME_RE.match(v):
            raise ValueError("name may only contain letters, digits, '_', '.' and '-'")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        return _validate_password(v)


class UserLogin(BaseModel):
    name: str = Field(min_length=1, max_length=320)  # name or email
    password: str = Field(min_length=1, max_length=128)


class ProfilePatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=30)
    avatar_url: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not NAME_RE.match(v):
            raise ValueError("name may only contain letters, digits, '_', '.' and '-'")
        return v


class ForgotPassword(BaseModel):
    email: EmailStr


class ResetPassword(BaseModel):
    token: str = Field(min_length=10, max_length=200)
    password: str = Field(min_length=6, max_length=MAX_PASSWORD_BYTES)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        return _validate_password(v)


# ── Checklists ────────────────────────────────────────────────────────────────

class Task(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    done: bool = False
    model_config = {"extra": "ignore"}


class ChecklistUpdate(BaseModel):
    tasks: list[Task] = Field(max_length=100)


# ── Challenges ────────────────────────────────────────────────────────────────

class ChallengeAction(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    done: bool = False


class ChallengeBody(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=5000)
    start_date: date
    end_date: date
    image_url: str = Field(default="", max_length=500)
    privacy: Literal["public", "private"] = "public"
    challenge_type: Literal["habit", "result"] = "habit"
    frequency: Optional[Literal["daily", "everyOtherDay", "weekdays"]] = None
    actions: list[ChallengeAction] = []
    completed_days: Optional[list[str]] = None
    model_config = {"extra": "ignore"}

    @field_validator("title", "description")
    @classmethod
    def strip_text(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("completed_days")
    @classmethod
    def validate_completed_days(cls, v):
        if v is None:
            return v
        return [_validate_day_key(d[:10]) for d in v]

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class CompletedDaysUpdate(BaseModel):
    completed_days: list[str] = Field(max_length=1000)

    @field_validator("completed_days")
    @classmethod
    def validate_days(cls, v):
        # stored values may come back with a time component; keep the date part
        return [_validate_day_key(d[:10]) for d in v]


# ── Comments ──────────────────────────────────────────────────────────────────

class CommentCreate(BaseModel):
    text: str = Field(min_length=1, max_length=2000)
    parent_id: Optional[str] = None

    @field_validator("text")
    @classmethod
    def strip_text(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


# ── Push ──────────────────────────────────────────────────────────────────────

class PushKeys(BaseModel):
    p256dh: str = Field(min_length=1, max_length=200)
    auth: str = Field(min_length=1, max_length=100)


class PushSubscription(BaseModel):
    endpoint: str = Field(min_length=1, max_length=1000)
    keys: PushKeys

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v):
        if not v.startswith("https://"):
            raise ValueError("endpoint must be an https URL")
        return v


class PushSubscribe(BaseModel):
    subscription: PushSubscription
