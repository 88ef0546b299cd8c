from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC now."""

    return datetime.now(timezone.utc)


def new_token_value() -> str:
    """Return 128 bits from the OS CSPRNG rendered as a hyphenated hex string."""

    return str(uuid.UUID(bytes=secrets.token_bytes(16)))


@dataclass
class User:
    id: int
    email: str
    created_at: datetime = field(default_factory=utcnow)
    # 1 = Monday ... 7 = Sunday
    start_of_week: int = 1
    rollover_time: str = "00:00"


@dataclass
class AuthToken:
    """One authenticated session: an unguessable value bound to a user until expiry."""

    value: str
    user_id: int
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: int, ttl: timedelta, *, now: Optional[datetime] = None
    ) -> "AuthToken":
        issued = now or utcnow()
        return cls(
            value=new_token_value(),
            user_id=user_id,
            expires_at=issued + ttl,
            created_at=issued,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Task:
    id: int
    user_id: int
    title: str
    planned_at: str
    created_at: datetime = field(default_factory=utcnow)
    completed: bool = False


TASK_ORDER_COLUMNS = ("id", "planned_at", "created_at")


@dataclass
class TaskFilter:
    """Search criteria for a user's tasks.

    ``after``/``before`` are exclusive ``YYYY-MM-DD`` bounds on ``planned_at``.
    """

    user_id: int
    after: Optional[str] = None
    before: Optional[str] = None
    completed: Optional[bool] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    order_col: str = "id"
    order_dir: str = "desc"

    def matches(self, task: Task) -> bool:
        if task.user_id != self.user_id:
            return False
        if self.after is not None and not task.planned_at > self.after:
            return False
        if self.before is not None and not task.planned_at < self.before:
            return False
        if self.completed is not None and task.completed != self.completed:
            return False
        return True
