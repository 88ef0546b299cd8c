from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from daytick.config import Settings
from daytick.logging import get_logger
from daytick.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthenticatedError,
)
from daytick.service.sessions import SessionManager
from daytick.storage.errors import ConstraintViolation
from daytick.storage.models import AuthToken, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, email: str) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def delete_user(self, user_id: int) -> bool: ...

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthContext:
    user_id: int
    token: str


def normalize_token(raw: Optional[str]) -> Optional[str]:
    """Return the canonical form of a presented token, or None if it is not a UUID."""

    if not raw:
        return None
    try:
        return str(uuid.UUID(raw.strip()))
    except ValueError:
        return None


class AuthGate:
    """Resolve the session token carried by a request to its user.

    Stateless; every decision is delegated to the session manager.
    """

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    def authenticate(
        self, cookie_value: Optional[str], authorization: Optional[str] = None
    ) -> AuthContext:
        token = self.extract_token(cookie_value, authorization)
        user_id = self.sessions.validate(token)
        return AuthContext(user_id=user_id, token=token)

    def extract_token(
        self, cookie_value: Optional[str], authorization: Optional[str] = None
    ) -> str:
        """Canonical token from the cookie, else the bearer header; no session lookup."""
        raw = cookie_value if cookie_value else self._extract_bearer(authorization)
        token = normalize_token(raw)
        if token is None:
            # Malformed or absent: reject without touching the cache or store
            raise UnauthenticatedError()
        return token

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1]


class AuthService:
    """Account lifecycle: signup, login, logout, password change and deletion.

    Store and hashing work is blocking, so each public coroutine hands it to
    a worker thread.
    """

    def __init__(
        self, store: AuthStore, sessions: SessionManager, settings: Settings
    ) -> None:
        self.store: AuthStore = store
        self.sessions = sessions
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    async def signup(self, email: str, password: str) -> tuple[User, AuthToken]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        return await asyncio.to_thread(self._signup, email, password)

    def _signup(self, email: str, password: str) -> tuple[User, AuthToken]:
        try:
            user = self.store.create_user(email)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.save_password(user.id, password)
        token = self.sessions.create(user.id)
        self.logger.info("user_registered", user_id=user.id)
        return user, token

    async def login(self, email: str, password: str) -> tuple[User, AuthToken]:
        return await asyncio.to_thread(self._login, email, password)

    def _login(self, email: str, password: str) -> tuple[User, AuthToken]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            raise AuthenticationError("invalid email or password")
        token = self.sessions.create(user.id)
        return user, token

    async def logout(self, token: str) -> None:
        await asyncio.to_thread(self.sessions.invalidate, token)

    async def change_password(
        self,
        user_id: int,
        old_password: str,
        new_password: str,
        *,
        current_token: Optional[str] = None,
    ) -> int:
        """Replace a user's password and revoke every other session they hold.

        Returns:
            Number of sessions revoked
        """
        return await asyncio.to_thread(
            self._change_password, user_id, old_password, new_password, current_token
        )

    def _change_password(
        self,
        user_id: int,
        old_password: str,
        new_password: str,
        current_token: Optional[str],
    ) -> int:
        if not self.verify_password(user_id, old_password):
            raise AuthenticationError("invalid password")
        self.save_password(user_id, new_password)
        revoked = self.sessions.invalidate_user(user_id, except_value=current_token)
        self.logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    async def delete_account(self, user_id: int) -> None:
        await asyncio.to_thread(self._delete_account, user_id)

    def _delete_account(self, user_id: int) -> None:
        self.sessions.invalidate_user(user_id)
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_deleted", user_id=user_id)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: int, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: int, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)
