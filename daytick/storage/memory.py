from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from daytick.logging import get_logger
from daytick.storage.errors import ConstraintViolation, PersistenceError
from daytick.storage.models import AuthToken, Task, TaskFilter, User


class MemoryStore:
    """In-memory store snapshotted to a JSON file after every mutation."""

    def __init__(self, fs_root: str = "/tmp/daytick") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.tokens: Dict[str, AuthToken] = {}
        self.tasks: Dict[int, Task] = {}
        self._user_id_seq: int = 1
        self._task_id_seq: int = 1
        # Thread lock for sequence counters to prevent race conditions
        self._seq_lock = threading.Lock()
        # RLock so mutations can call helpers that also take the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _next_user_id(self) -> int:
        with self._seq_lock:
            next_id = self._user_id_seq
            self._user_id_seq += 1
            return next_id

    def _next_task_id(self) -> int:
        with self._seq_lock:
            next_id = self._task_id_seq
            self._task_id_seq += 1
            return next_id

    def _commit(self, rollback: Optional[Callable[[], None]] = None) -> None:
        """Persist the snapshot, undoing the in-memory change if the write fails."""
        try:
            self._persist_state()
        except PersistenceError:
            if rollback is not None:
                rollback()
            raise

    def verify_connection(self) -> None:
        path = self._state_path()
        if not path.parent.is_dir():
            raise PersistenceError("state directory missing", operation="verify")

    # users
    def create_user(self, email: str) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=self._next_user_id(), email=normalized)
            self.users[user.id] = user
            self._commit(lambda: self.users.pop(user.id, None))
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def update_user_settings(
        self,
        user_id: int,
        *,
        start_of_week: Optional[int] = None,
        rollover_time: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            previous = self.users.get(user_id)
            if not previous:
                return None
            changes = {}
            if start_of_week is not None:
                changes["start_of_week"] = start_of_week
            if rollover_time is not None:
                changes["rollover_time"] = rollover_time
            user = replace(previous, **changes)
            self.users[user_id] = user
            self._commit(lambda: self.users.__setitem__(user_id, previous))
            return user

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if user is None:
                return False
            credential = self.credentials.pop(user_id, None)
            tokens = {v: t for v, t in self.tokens.items() if t.user_id == user_id}
            tasks = {i: t for i, t in self.tasks.items() if t.user_id == user_id}
            for value in tokens:
                del self.tokens[value]
            for task_id in tasks:
                del self.tasks[task_id]

            def _restore() -> None:
                self.users[user_id] = user
                if credential is not None:
                    self.credentials[user_id] = credential
                self.tokens.update(tokens)
                self.tasks.update(tasks)

            self._commit(_restore)
            return True

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            previous = self.credentials.get(user_id)
            self.credentials[user_id] = (password_hash, password_algo)

            def _restore() -> None:
                if previous is None:
                    self.credentials.pop(user_id, None)
                else:
                    self.credentials[user_id] = previous

            self._commit(_restore)

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # session tokens
    def insert_token(self, token: AuthToken) -> None:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if token.value in self.tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            self.tokens[token.value] = token
            self._commit(lambda: self.tokens.pop(token.value, None))

    def get_token(self, value: str) -> Optional[AuthToken]:
        with self._data_lock:
            return self.tokens.get(value)

    def list_expired_tokens(self, as_of: datetime) -> List[AuthToken]:
        with self._data_lock:
            return [t for t in self.tokens.values() if t.expires_at <= as_of]

    def delete_token(self, value: str) -> bool:
        with self._data_lock:
            removed = self.tokens.pop(value, None)
            if removed is None:
                return False
            self._commit(lambda: self.tokens.__setitem__(value, removed))
            return True

    def delete_user_tokens(self, user_id: int, except_value: Optional[str] = None) -> int:
        with self._data_lock:
            stale = {
                value: token
                for value, token in self.tokens.items()
                if token.user_id == user_id and value != except_value
            }
            if not stale:
                return 0
            for value in stale:
                self.tokens.pop(value, None)
            self._commit(lambda: self.tokens.update(stale))
            return len(stale)

    # tasks
    def create_task(self, user_id: int, title: str, planned_at: str) -> Task:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            task = Task(
                id=self._next_task_id(),
                user_id=user_id,
                title=title,
                planned_at=planned_at,
            )
            self.tasks[task.id] = task
            self._commit(lambda: self.tasks.pop(task.id, None))
            return task

    def get_task(self, task_id: int) -> Optional[Task]:
        with self._data_lock:
            return self.tasks.get(task_id)

    def update_task(
        self,
        task_id: int,
        *,
        title: Optional[str] = None,
        planned_at: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> Optional[Task]:
        with self._data_lock:
            previous = self.tasks.get(task_id)
            if not previous:
                return None
            changes = {
                name: value
                for name, value in (
                    ("title", title),
                    ("planned_at", planned_at),
                    ("completed", completed),
                )
                if value is not None
            }
            task = replace(previous, **changes)
            self.tasks[task_id] = task
            self._commit(lambda: self.tasks.__setitem__(task_id, previous))
            return task

    def delete_task(self, task_id: int) -> bool:
        with self._data_lock:
            removed = self.tasks.pop(task_id, None)
            if removed is None:
                return False
            self._commit(lambda: self.tasks.__setitem__(task_id, removed))
            return True

    def search_tasks(self, criteria: TaskFilter) -> List[Task]:
        with self._data_lock:
            matched = [t for t in self.tasks.values() if criteria.matches(t)]
        # Secondary key on id keeps pagination stable across equal values
        matched.sort(
            key=lambda t: (getattr(t, criteria.order_col), t.id),
            reverse=criteria.order_dir == "desc",
        )
        start = criteria.offset or 0
        end = start + criteria.limit if criteria.limit is not None else None
        return matched[start:end]

    def count_tasks(self, criteria: TaskFilter) -> int:
        with self._data_lock:
            return sum(1 for t in self.tasks.values() if criteria.matches(t))

    # snapshot
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
            "sequences": {"user": self._user_id_seq, "task": self._task_id_seq},
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise PersistenceError(
                f"failed to persist in-memory state: {exc}", operation="persist"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly rather than exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise PersistenceError(
                f"failed to load in-memory state: {exc}", operation="load"
            ) from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            int(entry["user_id"]): (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tokens = {
            t["value"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        sequences = data.get("sequences", {})
        self._user_id_seq = max(
            int(sequences.get("user", 1)), max(self.users, default=0) + 1
        )
        self._task_id_seq = max(
            int(sequences.get("task", 1)), max(self.tasks, default=0) + 1
        )
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            tokens=len(self.tokens),
            tasks=len(self.tasks),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "created_at": self._serialize_datetime(user.created_at),
            "start_of_week": user.start_of_week,
            "rollover_time": user.rollover_time,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            email=data["email"],
            created_at=self._deserialize_datetime(data["created_at"]),
            start_of_week=int(data.get("start_of_week", 1)),
            rollover_time=data.get("rollover_time", "00:00"),
        )

    def _serialize_token(self, token: AuthToken) -> dict:
        return {
            "value": token.value,
            "user_id": token.user_id,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_token(self, data: dict) -> AuthToken:
        return AuthToken(
            value=data["value"],
            user_id=int(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "user_id": task.user_id,
            "title": task.title,
            "planned_at": task.planned_at,
            "created_at": self._serialize_datetime(task.created_at),
            "completed": task.completed,
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            title=data["title"],
            planned_at=data["planned_at"],
            created_at=self._deserialize_datetime(data["created_at"]),
            completed=bool(data.get("completed", False)),
        )
