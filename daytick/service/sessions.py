from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from daytick.logging import get_logger
from daytick.service.errors import UnauthenticatedError
from daytick.service.session_cache import SessionCache
from daytick.storage.models import AuthToken, utcnow

logger = get_logger(__name__)


class TokenStore(Protocol):
    def insert_token(self, token: AuthToken) -> None: ...

    def get_token(self, value: str) -> Optional[AuthToken]: ...

    def list_expired_tokens(self, as_of: datetime) -> List[AuthToken]: ...

    def delete_token(self, value: str) -> bool: ...

    def delete_user_tokens(
        self, user_id: int, except_value: Optional[str] = None
    ) -> int: ...


class SessionManager:
    """Issue, validate and revoke session tokens across the cache and the store.

    The store is authoritative. The cache is written through on ``create`` and
    filled on a validated miss; a cache hit is trusted without consulting the
    store, so expiry is only enforced once a miss triggers the sweep.

    Store failures surface as ``PersistenceError`` and are never swallowed here.
    """

    def __init__(
        self,
        store: TokenStore,
        cache: SessionCache,
        *,
        ttl: timedelta = timedelta(days=365),
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = ttl
        self._now = now

    def create(self, user_id: int) -> AuthToken:
        token = AuthToken.new(user_id, self.ttl, now=self._now())
        # Durable write first; the cache must never hold a token the store lacks
        self.store.insert_token(token)
        self.cache.put(token.value, user_id)
        logger.info(
            "session_created", user_id=user_id, expires_at=token.expires_at.isoformat()
        )
        return token

    def validate(self, value: str) -> int:
        cached = self.cache.get(value)
        if cached is not None:
            return cached

        logger.debug("session_cache_miss")
        self.sweep_expired()
        generation = self.cache.generation()
        token = self.store.get_token(value)
        if token is None:
            raise UnauthenticatedError()
        if token.is_expired(self._now()):
            # Expired between the sweep and the read
            self.invalidate(value)
            raise UnauthenticatedError()
        self.cache.put_if_generation(value, token.user_id, generation)
        return token.user_id

    def invalidate(self, value: str) -> None:
        self.cache.evict(value)
        removed = self.store.delete_token(value)
        # A miss that read the row before the delete may have re-cached it
        self.cache.evict(value)
        if removed:
            logger.info("session_invalidated")

    def sweep_expired(self) -> int:
        expired = self.store.list_expired_tokens(self._now())
        for token in expired:
            self.invalidate(token.value)
        if expired:
            logger.info("expired_sessions_swept", count=len(expired))
        return len(expired)

    def invalidate_user(self, user_id: int, except_value: Optional[str] = None) -> int:
        self.cache.evict_user(user_id, except_value)
        removed = self.store.delete_user_tokens(user_id, except_value)
        self.cache.evict_user(user_id, except_value)
        logger.info(
            "user_sessions_invalidated",
            user_id=user_id,
            count=removed,
            kept_current=except_value is not None,
        )
        return removed
