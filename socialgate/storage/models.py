from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional

# Reserved profile properties touched by the social services
FRIENDS_PROPERTY = "Friends"
STATUS_PROPERTY = "Status"
UPDATES_PROPERTY = "Updates"


class TokenScope(str, Enum):
    """Permission level carried by a capability token."""

    READ = "r"
    READ_UPDATE = "ru"

    def permits(self, operation: "Operation") -> bool:
        if operation is Operation.READ:
            return True
        return self is TokenScope.READ_UPDATE


class Operation(str, Enum):
    READ = "read"
    UPDATE = "update"


@dataclass(frozen=True)
class ResourceLocator:
    """(partition, row) pair identifying one profile record."""

    partition: str
    row: str


@dataclass
class Credential:
    user_id: str
    password_hash: str
    password_algo: str
    partition: Optional[str] = None
    row: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def locator(self) -> Optional[ResourceLocator]:
        if not self.partition or not self.row:
            return None
        return ResourceLocator(self.partition, self.row)


@dataclass
class ProfileRecord:
    table: str
    partition: str
    row: str
    properties: Dict[str, str] = field(default_factory=dict)
    etag: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def locator(self) -> ResourceLocator:
        return ResourceLocator(self.partition, self.row)


@dataclass
class Session:
    user_id: str
    token: str
    partition: str
    row: str
    scope: TokenScope
    issued_at: datetime
    expires_at: datetime
    active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        locator: ResourceLocator,
        scope: TokenScope,
        ttl_hours: int = 24,
    ) -> "Session":
        now = datetime.now(timezone.utc)
        return cls(
            user_id=user_id,
            token=token,
            partition=locator.partition,
            row=locator.row,
            scope=scope,
            issued_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
        )

    @property
    def locator(self) -> ResourceLocator:
        return ResourceLocator(self.partition, self.row)

    def is_live(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.active and self.expires_at > now
