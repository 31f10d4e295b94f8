from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple
from urllib.parse import quote

import httpx

from socialgate.logging import get_logger, log_fanout_report, sanitize_error_message
from socialgate.service.errors import ServerError, ServiceUnavailableError
from socialgate.service.friends import Friend, FriendList, encode
from socialgate.storage.errors import PreconditionFailed
from socialgate.storage.models import UPDATES_PROPERTY, ProfileRecord

logger = get_logger(__name__)


class Delivery(str, enum.Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class FanoutReport:
    """Per-friend outcome of one status broadcast."""

    status: str
    delivered: List[Friend] = field(default_factory=list)
    skipped: List[Friend] = field(default_factory=list)
    failed: List[Friend] = field(default_factory=list)
    timed_out: List[Friend] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return (
            len(self.delivered)
            + len(self.skipped)
            + len(self.failed)
            + len(self.timed_out)
        )

    def record(self, friend: Friend, outcome: Delivery) -> None:
        getattr(self, outcome.value).append(friend)

    def to_dict(self) -> Dict[str, Any]:
        def _pairs(friends: List[Friend]) -> List[Dict[str, str]]:
            return [{"country": f.country, "name": f.name} for f in friends]

        return {
            "status": self.status,
            "attempted": self.attempted,
            "delivered": _pairs(self.delivered),
            "skipped": _pairs(self.skipped),
            "failed": _pairs(self.failed),
            "timed_out": _pairs(self.timed_out),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FanoutReport":
        def _friends(key: str) -> List[Friend]:
            return [Friend(e["country"], e["name"]) for e in data.get(key) or []]

        return cls(
            status=data.get("status", ""),
            delivered=_friends("delivered"),
            skipped=_friends("skipped"),
            failed=_friends("failed"),
            timed_out=_friends("timed_out"),
        )


class FanoutStore(Protocol):
    def get_entity(self, table: str, partition: str, row: str) -> Optional[ProfileRecord]: ...

    def merge_entity(
        self,
        table: str,
        partition: str,
        row: str,
        properties: Dict[str, str],
        *,
        if_match: Optional[str] = None,
    ) -> Optional[ProfileRecord]: ...


class StatusFanout:
    """Appends a status line to every friend's ``Updates`` log.

    Each friend is an independent task. A friend's profile lives at
    ``partition=country, row=name``; missing profiles are skipped, other
    failures recorded, and nothing here raises to the caller.
    """

    def __init__(
        self,
        store: FanoutStore,
        *,
        table: str = "DataTable",
        max_concurrency: int = 8,
        deadline_seconds: float = 15.0,
        max_retries: int = 5,
    ) -> None:
        self.store = store
        self.table = table
        self.max_concurrency = max_concurrency
        self.deadline_seconds = deadline_seconds
        self.max_retries = max_retries

    def deliver_one(self, friend: Friend, status: str) -> Delivery:
        """Blocking read-append-merge for one friend, retried on ETag conflict."""
        for attempt in range(1, self.max_retries + 1):
            record = self.store.get_entity(self.table, friend.country, friend.name)
            if record is None:
                logger.info(
                    "fanout_friend_skipped", country=friend.country, name=friend.name
                )
                return Delivery.SKIPPED
            updates = record.properties.get(UPDATES_PROPERTY, "") + status + "\n"
            try:
                merged = self.store.merge_entity(
                    self.table,
                    friend.country,
                    friend.name,
                    {UPDATES_PROPERTY: updates},
                    if_match=record.etag,
                )
            except PreconditionFailed:
                logger.debug(
                    "fanout_friend_conflict",
                    country=friend.country,
                    name=friend.name,
                    attempt=attempt,
                )
                continue
            if merged is None:
                # deleted between read and write
                logger.info(
                    "fanout_friend_skipped", country=friend.country, name=friend.name
                )
                return Delivery.SKIPPED
            return Delivery.DELIVERED
        logger.warning(
            "fanout_friend_conflict_exhausted",
            country=friend.country,
            name=friend.name,
            attempts=self.max_retries,
        )
        return Delivery.FAILED

    async def fan_out(self, status: str, friends: Iterable[Friend]) -> FanoutReport:
        report = FanoutReport(status=status)
        targets = list(friends)
        if not targets:
            log_fanout_report(report, logger)
            return report

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _deliver(friend: Friend) -> Tuple[Friend, Delivery]:
            async with semaphore:
                try:
                    outcome = await asyncio.to_thread(self.deliver_one, friend, status)
                except Exception as exc:
                    logger.warning(
                        "fanout_friend_failed",
                        country=friend.country,
                        name=friend.name,
                        error_type=type(exc).__name__,
                        error=sanitize_error_message(str(exc)),
                    )
                    outcome = Delivery.FAILED
                return friend, outcome

        tasks = {asyncio.create_task(_deliver(f)): f for f in targets}
        done, pending = await asyncio.wait(tasks, timeout=self.deadline_seconds)
        for task in pending:
            task.cancel()
        outcomes: Dict[Friend, Delivery] = {}
        for task in done:
            friend, outcome = task.result()
            outcomes[friend] = outcome
        # keep report order aligned with the friend list
        for friend in targets:
            if friend in outcomes:
                report.record(friend, outcomes[friend])
            else:
                logger.warning(
                    "fanout_friend_timed_out",
                    country=friend.country,
                    name=friend.name,
                    deadline_seconds=self.deadline_seconds,
                )
                report.timed_out.append(friend)
        log_fanout_report(report, logger)
        return report


class PushDispatcher(Protocol):
    async def dispatch(
        self, sender: Friend, status: str, friends: FriendList
    ) -> FanoutReport: ...


class LocalPushDispatcher:
    """Runs the fan-out engine in-process."""

    def __init__(self, fanout: StatusFanout) -> None:
        self.fanout = fanout

    async def dispatch(
        self, sender: Friend, status: str, friends: FriendList
    ) -> FanoutReport:
        return await self.fanout.fan_out(status, friends)


class HttpPushDispatcher:
    """Hands the fan-out to a remote push service over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0))
            )
        return self._client

    def _url(self, sender: Friend, status: str) -> str:
        segments = (sender.country, sender.name, status)
        path = "/".join(quote(s, safe="") for s in segments)
        return f"{self.base_url}/v1/push/PushStatus/{path}"

    async def dispatch(
        self, sender: Friend, status: str, friends: FriendList
    ) -> FanoutReport:
        """POST the broadcast to the push service.

        Raises:
            ServiceUnavailableError: the push service cannot be reached or
                answers with a server error
        """
        client = await self._get_client()
        try:
            response = await client.post(
                self._url(sender, status), json={"Friends": encode(friends)}
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "push_dispatch_http_error",
                status_code=exc.response.status_code,
                base_url=self.base_url,
            )
            if exc.response.status_code >= 500:
                raise ServiceUnavailableError("push service unavailable") from exc
            raise ServerError(
                "push service rejected the broadcast",
                detail={"status_code": exc.response.status_code},
            ) from exc
        except httpx.TransportError as exc:
            logger.error(
                "push_dispatch_unreachable",
                base_url=self.base_url,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise ServiceUnavailableError("push service unreachable") from exc
        body = response.json()
        return FanoutReport.from_dict(body.get("data") or {})

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
