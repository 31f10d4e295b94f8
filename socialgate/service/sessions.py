from __future__ import annotations

import contextlib
import threading
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

from redis.exceptions import RedisError

from socialgate.logging import get_logger
from socialgate.service.auth import AuthorizationGate
from socialgate.service.errors import BadRequestError, ForbiddenError, NotFoundError
from socialgate.storage.models import Session, TokenScope
from socialgate.storage.redis_cache import RedisSessionCache

logger = get_logger(__name__)


class _KeyedLocks:
    """Lock table handing out one lock per key.

    Entries are reference counted and dropped once no thread holds or waits on
    them, so the table only grows with the number of users in flight.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class SessionRegistry:
    """Tracks which users are signed on and the token each one is bound to.

    Per user the lifecycle is ``Anonymous -> Active -> Anonymous``. Sign-on and
    sign-off for the same user are serialised; different users never contend
    on a shared lock beyond the brief lock-table lookup.
    """

    def __init__(
        self,
        gate: AuthorizationGate,
        *,
        cache: Optional[RedisSessionCache] = None,
        token_ttl_hours: int = 24,
    ) -> None:
        self.gate = gate
        self.cache = cache
        self.token_ttl_hours = token_ttl_hours
        self._sessions: Dict[str, Session] = {}
        self._locks = _KeyedLocks()

    def sign_on(self, user_id: str, password: str) -> Session:
        """Authenticate and install (or refresh) the user's session.

        The minted token is proven against the profile store with one verifying
        read before the session is installed.

        Raises:
            NotFoundError: bad credentials or the bound profile does not resolve;
                any prior session is left untouched
        """
        with self._locks.hold(user_id):
            try:
                token, locator = self.gate.request_token(
                    user_id, password, TokenScope.READ_UPDATE
                )
                self.gate.read_profile(token, TokenScope.READ_UPDATE, locator)
            except NotFoundError:
                logger.info("sign_on_failed", user_id=user_id)
                raise
            except BadRequestError as exc:
                logger.warning("sign_on_failed", user_id=user_id, reason=exc.message)
                raise NotFoundError("user not found", detail={"user_id": user_id}) from exc
            session = Session.new(
                user_id,
                token,
                locator,
                TokenScope.READ_UPDATE,
                ttl_hours=self.token_ttl_hours,
            )
            refreshed = user_id in self._sessions
            self._sessions[user_id] = session
            self._mirror(session)
            logger.info(
                "sign_on_succeeded",
                user_id=user_id,
                partition=locator.partition,
                row=locator.row,
                refreshed=refreshed,
            )
            return session

    def sign_off(self, user_id: str) -> None:
        """Tear down the user's session.

        Raises:
            NotFoundError: no active session for ``user_id``
        """
        with self._locks.hold(user_id):
            session = self._lookup(user_id)
            if session is None or not session.is_live():
                self._sessions.pop(user_id, None)
                raise NotFoundError("no active session", detail={"user_id": user_id})
            session.active = False
            self._sessions.pop(user_id, None)
            self._evict(user_id)
            logger.info("sign_off_succeeded", user_id=user_id)

    def require_active(self, user_id: str) -> Session:
        """Return the live session for ``user_id`` or fail closed.

        Raises:
            ForbiddenError: no session, an inactive one, or one past its expiry
        """
        with self._locks.hold(user_id):
            session = self._lookup(user_id)
            if session is None or not session.is_live():
                logger.info("session_not_active", user_id=user_id)
                raise ForbiddenError(
                    "no active session for user", detail={"user_id": user_id}
                )
            return session

    def get(self, user_id: str) -> Optional[Session]:
        with self._locks.hold(user_id):
            return self._lookup(user_id)

    def active_count(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return sum(1 for s in list(self._sessions.values()) if s.is_live(now))

    def _lookup(self, user_id: str) -> Optional[Session]:
        """Find the user's session, reading the mirror first when one is configured.

        The mirror is authoritative across processes: a missing key means the
        session was ended elsewhere. The local map only answers while Redis is
        unreachable.
        """
        if self.cache is None:
            return self._sessions.get(user_id)
        try:
            session = self.cache.load_session(user_id)
        except RedisError as exc:
            logger.warning("session_cache_read_failed", user_id=user_id, error=str(exc))
            return self._sessions.get(user_id)
        if session is None:
            self._sessions.pop(user_id, None)
        else:
            self._sessions[user_id] = session
        return session

    def _mirror(self, session: Session) -> None:
        if self.cache is None:
            return
        try:
            self.cache.cache_session(session)
        except RedisError as exc:
            logger.warning(
                "session_cache_write_failed", user_id=session.user_id, error=str(exc)
            )

    def _evict(self, user_id: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.evict_session(user_id)
        except RedisError as exc:
            logger.warning("session_cache_evict_failed", user_id=user_id, error=str(exc))
