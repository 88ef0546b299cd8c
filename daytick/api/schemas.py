from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from daytick.storage.models import Task, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_OF_DAY_PATTERN = re.compile(r"^\d{2}:\d{2}$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

MAX_TITLE_LENGTH = 500


def is_valid_date(value: Optional[str]) -> bool:
    """True for a real calendar date written as YYYY-MM-DD."""
    if not value or not _DATE_PATTERN.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _validate_date(value: str) -> str:
    if not is_valid_date(value):
        raise ValueError("date must be YYYY-MM-DD")
    return value


def _validate_rollover_time(value: str) -> str:
    if not _TIME_OF_DAY_PATTERN.match(value):
        raise ValueError("rollover_time must be HH:MM")
    hours, minutes = (int(part) for part in value.split(":"))
    if hours > 23 or minutes > 59:
        raise ValueError("rollover_time must be a valid time of day")
    return value


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    # Not format-checked: an unknown or malformed address is just a failed login
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class AuthResponse(BaseModel):
    user_id: int
    session_token: str
    expires_at: datetime


class PasswordChangeRequest(BaseModel):
    old_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SettingsResponse(BaseModel):
    user_id: int
    email: str
    start_of_week: int
    rollover_time: str
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "SettingsResponse":
        return cls(
            user_id=user.id,
            email=user.email,
            start_of_week=user.start_of_week,
            rollover_time=user.rollover_time,
            created_at=user.created_at,
        )


class SettingsUpdateRequest(BaseModel):
    start_of_week: Optional[int] = Field(default=None, ge=1, le=7)
    rollover_time: Optional[str] = None

    @field_validator("rollover_time")
    @classmethod
    def _validate_rollover(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_rollover_time(value)


class TaskCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    planned_at: str

    @field_validator("planned_at")
    @classmethod
    def _validate_planned_at(cls, value: str) -> str:
        return _validate_date(value)


class TaskUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    planned_at: Optional[str] = None
    completed: Optional[bool] = None

    @field_validator("planned_at")
    @classmethod
    def _validate_planned_at(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_date(value)

    @model_validator(mode="after")
    def _require_change(self):
        if self.title is None and self.planned_at is None and self.completed is None:
            raise ValueError("at least one of title, planned_at, completed is required")
        return self


class TaskResponse(BaseModel):
    id: int
    user_id: int
    title: str
    planned_at: str
    created_at: datetime
    completed: bool

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            user_id=task.user_id,
            title=task.title,
            planned_at=task.planned_at,
            created_at=task.created_at,
            completed=task.completed,
        )


class TaskCountResponse(BaseModel):
    count: int
