from __future__ import annotations

import asyncio
from typing import Callable

from socialgate.logging import get_logger
from socialgate.service.auth import AuthorizationGate
from socialgate.service.errors import BadRequestError, ConflictError
from socialgate.service.fanout import FanoutReport, PushDispatcher
from socialgate.service.friends import Friend, FriendList, decode, encode
from socialgate.service.sessions import SessionRegistry
from socialgate.storage.errors import PreconditionFailed
from socialgate.storage.models import FRIENDS_PROPERTY, STATUS_PROPERTY, Session

logger = get_logger(__name__)


class SocialService:
    """Friend-list edits and status broadcasts for signed-on users."""

    def __init__(
        self,
        sessions: SessionRegistry,
        gate: AuthorizationGate,
        dispatcher: PushDispatcher,
        *,
        max_retries: int = 5,
    ) -> None:
        self.sessions = sessions
        self.gate = gate
        self.dispatcher = dispatcher
        self.max_retries = max_retries

    def read_friend_list(self, user_id: str) -> FriendList:
        session = self.sessions.require_active(user_id)
        record = self.gate.read_profile(session.token, session.scope, session.locator)
        return decode(record.properties.get(FRIENDS_PROPERTY, ""))

    def add_friend(self, user_id: str, country: str, name: str) -> FriendList:
        session = self.sessions.require_active(user_id)
        friend = Friend(country, name)
        if not friend.is_encodable():
            raise BadRequestError(
                "friend fields contain a reserved delimiter",
                detail={"country": country, "name": name},
            )
        friends = self._mutate_friends(session, lambda fl: fl.add(friend))
        logger.info("friend_added", user_id=user_id, country=country, name=name)
        return friends

    def unfriend(self, user_id: str, country: str, name: str) -> FriendList:
        session = self.sessions.require_active(user_id)
        friend = Friend(country, name)
        friends = self._mutate_friends(session, lambda fl: fl.remove(friend))
        logger.info("friend_removed", user_id=user_id, country=country, name=name)
        return friends

    async def update_status(self, user_id: str, status: str) -> FanoutReport:
        """Set the caller's ``Status`` and broadcast it to every friend.

        The caller's own write is surfaced on failure; per-friend failures only
        show up in the returned report.

        Raises:
            ForbiddenError: no active session
            ServiceUnavailableError: the dispatch channel cannot be reached
        """
        session = await asyncio.to_thread(self.sessions.require_active, user_id)
        record = await asyncio.to_thread(
            self.gate.merge_profile,
            session.token,
            session.scope,
            session.locator,
            {STATUS_PROPERTY: status},
        )
        friends = decode(record.properties.get(FRIENDS_PROPERTY, ""))
        logger.info("status_updated", user_id=user_id, friends=len(friends))
        sender = Friend(session.partition, session.row)
        return await self.dispatcher.dispatch(sender, status, friends)

    def _mutate_friends(
        self, session: Session, mutate: Callable[[FriendList], bool]
    ) -> FriendList:
        """Read-modify-write of the ``Friends`` property guarded by the record ETag."""
        for attempt in range(1, self.max_retries + 1):
            record = self.gate.read_profile(
                session.token, session.scope, session.locator
            )
            friends = decode(record.properties.get(FRIENDS_PROPERTY, ""))
            if not mutate(friends):
                return friends
            try:
                self.gate.merge_profile(
                    session.token,
                    session.scope,
                    session.locator,
                    {FRIENDS_PROPERTY: encode(friends)},
                    if_match=record.etag,
                )
            except PreconditionFailed:
                logger.info(
                    "friends_merge_conflict", user_id=session.user_id, attempt=attempt
                )
                continue
            return friends
        raise ConflictError(
            "friend list changed concurrently; retries exhausted",
            detail={"user_id": session.user_id, "attempts": self.max_retries},
        )
