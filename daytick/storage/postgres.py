from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from daytick.logging import get_logger
from daytick.storage.errors import ConstraintViolation, PersistenceError
from daytick.storage.models import (
    TASK_ORDER_COLUMNS,
    AuthToken,
    Task,
    TaskFilter,
    User,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        start_of_week SMALLINT NOT NULL DEFAULT 1
            CHECK (start_of_week BETWEEN 1 AND 7),
        rollover_time TEXT NOT NULL DEFAULT '00:00'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        value UUID PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_expires_at_idx ON auth_token (expires_at)",
    "CREATE INDEX IF NOT EXISTS auth_token_user_id_idx ON auth_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS task (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        planned_at DATE NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        completed BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_user_planned_idx ON task (user_id, planned_at)",
)


class PostgresStore:
    """Postgres-backed store for users, credentials, session tokens and tasks."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        """Yield a pooled connection, mapping driver failures onto storage errors."""

        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.IntegrityError as exc:
            # Callers re-raise with a domain message; the constraint name is kept for logs
            raise ConstraintViolation(
                "constraint violated",
                {"constraint": exc.diag.constraint_name, "sqlstate": exc.sqlstate},
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_operation_failed", operation=operation, error=str(exc))
            raise PersistenceError(
                f"database operation failed: {operation}", operation=operation
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the tables this service needs if they are missing."""

        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect("verify") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, email: str) -> User:
        normalized = email.strip().lower()
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email) VALUES (%s)
                    RETURNING id, email, created_at, start_of_week, rollover_time
                    """,
                    (normalized,),
                ).fetchone()
        except ConstraintViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_settings(
        self,
        user_id: int,
        *,
        start_of_week: Optional[int] = None,
        rollover_time: Optional[str] = None,
    ) -> Optional[User]:
        with self._connect("update_user_settings") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET start_of_week = COALESCE(%s, start_of_week),
                    rollover_time = COALESCE(%s, rollover_time)
                WHERE id = %s
                RETURNING *
                """,
                (start_of_week, rollover_time, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: int) -> bool:
        # Credentials, tokens and tasks go with the user via ON DELETE CASCADE
        with self._connect("delete_user") as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect("save_password") as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except ConstraintViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect("get_password_record") as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # session tokens
    def insert_token(self, token: AuthToken) -> None:
        try:
            with self._connect("insert_token") as conn:
                conn.execute(
                    """
                    INSERT INTO auth_token (value, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token.value, token.user_id, token.expires_at, token.created_at),
                )
        except ConstraintViolation as exc:
            raise ConstraintViolation(
                "token user missing or token reused", {"user_id": token.user_id}
            ) from exc

    def get_token(self, value: str) -> Optional[AuthToken]:
        with self._connect("get_token") as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE value = %s", (value,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def list_expired_tokens(self, as_of: datetime) -> List[AuthToken]:
        with self._connect("list_expired_tokens") as conn:
            rows = conn.execute(
                "SELECT * FROM auth_token WHERE expires_at <= %s", (as_of,)
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def delete_token(self, value: str) -> bool:
        with self._connect("delete_token") as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE value = %s", (value,))
            return cur.rowcount > 0

    def delete_user_tokens(self, user_id: int, except_value: Optional[str] = None) -> int:
        with self._connect("delete_user_tokens") as conn:
            if except_value is None:
                cur = conn.execute("DELETE FROM auth_token WHERE user_id = %s", (user_id,))
            else:
                cur = conn.execute(
                    "DELETE FROM auth_token WHERE user_id = %s AND value <> %s",
                    (user_id, except_value),
                )
            return cur.rowcount

    # tasks
    def create_task(self, user_id: int, title: str, planned_at: str) -> Task:
        try:
            with self._connect("create_task") as conn:
                row = conn.execute(
                    """
                    INSERT INTO task (user_id, title, planned_at)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, title, date.fromisoformat(planned_at)),
                ).fetchone()
        except ConstraintViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc
        return self._task_from_row(row)

    def get_task(self, task_id: int) -> Optional[Task]:
        with self._connect("get_task") as conn:
            row = conn.execute("SELECT * FROM task WHERE id = %s", (task_id,)).fetchone()
        return self._task_from_row(row) if row else None

    def update_task(
        self,
        task_id: int,
        *,
        title: Optional[str] = None,
        planned_at: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> Optional[Task]:
        with self._connect("update_task") as conn:
            row = conn.execute(
                """
                UPDATE task
                SET title = COALESCE(%s, title),
                    planned_at = COALESCE(%s, planned_at),
                    completed = COALESCE(%s, completed)
                WHERE id = %s
                RETURNING *
                """,
                (
                    title,
                    date.fromisoformat(planned_at) if planned_at is not None else None,
                    completed,
                    task_id,
                ),
            ).fetchone()
        return self._task_from_row(row) if row else None

    def delete_task(self, task_id: int) -> bool:
        with self._connect("delete_task") as conn:
            cur = conn.execute("DELETE FROM task WHERE id = %s", (task_id,))
            return cur.rowcount > 0

    def _task_where(self, criteria: TaskFilter) -> tuple[str, list[Any]]:
        clauses = ["user_id = %s"]
        params: list[Any] = [criteria.user_id]
        if criteria.after is not None:
            clauses.append("planned_at > %s")
            params.append(date.fromisoformat(criteria.after))
        if criteria.before is not None:
            clauses.append("planned_at < %s")
            params.append(date.fromisoformat(criteria.before))
        if criteria.completed is not None:
            clauses.append("completed = %s")
            params.append(criteria.completed)
        return " AND ".join(clauses), params

    def search_tasks(self, criteria: TaskFilter) -> List[Task]:
        if criteria.order_col not in TASK_ORDER_COLUMNS:
            raise ValueError(f"unsupported order column: {criteria.order_col}")
        direction = "ASC" if criteria.order_dir == "asc" else "DESC"
        where, params = self._task_where(criteria)
        # Column and direction are whitelisted above
        query = (
            f"SELECT * FROM task WHERE {where} "
            f"ORDER BY {criteria.order_col} {direction}, id {direction}"
        )
        if criteria.limit is not None:
            query += " LIMIT %s"
            params.append(criteria.limit)
        if criteria.offset:
            query += " OFFSET %s"
            params.append(criteria.offset)
        with self._connect("search_tasks") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._task_from_row(row) for row in rows]

    def count_tasks(self, criteria: TaskFilter) -> int:
        where, params = self._task_where(criteria)
        with self._connect("count_tasks") as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM task WHERE {where}", params
            ).fetchone()
        return int(row["n"]) if row else 0

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            created_at=row["created_at"],
            start_of_week=int(row.get("start_of_week") or 1),
            rollover_time=row.get("rollover_time") or "00:00",
        )

    @staticmethod
    def _token_from_row(row: dict) -> AuthToken:
        return AuthToken(
            value=str(row["value"]),
            user_id=int(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _task_from_row(row: dict) -> Task:
        planned = row["planned_at"]
        return Task(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            title=row["title"],
            planned_at=planned.isoformat() if isinstance(planned, date) else str(planned),
            created_at=row["created_at"],
            completed=bool(row["completed"]),
        )
