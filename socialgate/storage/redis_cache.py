from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

from redis import Redis

from socialgate.storage.models import Session, TokenScope


class RedisSessionCache:
    """Redis mirror of the session registry.

    Sessions are written through so several gate processes behind a load
    balancer agree on who is signed on. Entries expire with the session.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        prefix: str = "socialgate:session",
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until expiry, clamped to at least 1 so Redis accepts it."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the mirror."""
        self.client.ping()

    def cache_session(self, session: Session) -> None:
        payload = {
            "user_id": session.user_id,
            "token": session.token,
            "partition": session.partition,
            "row": session.row,
            "scope": session.scope.value,
            "issued_at": session.issued_at.isoformat(),
            "expires_at": session.expires_at.isoformat(),
        }
        self.client.set(
            self._key(session.user_id),
            json.dumps(payload),
            ex=self._ttl_seconds(session.expires_at),
        )

    def load_session(self, user_id: str) -> Optional[Session]:
        cached = self.client.get(self._key(user_id))
        if not cached:
            return None
        try:
            data = json.loads(cached)
            return Session(
                user_id=data["user_id"],
                token=data["token"],
                partition=data["partition"],
                row=data["row"],
                scope=TokenScope(data["scope"]),
                issued_at=datetime.fromisoformat(data["issued_at"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            # Corrupted cache entry - treat as cache miss
            return None

    def evict_session(self, user_id: str) -> None:
        self.client.delete(self._key(user_id))

    def close(self) -> None:
        self.client.close()
