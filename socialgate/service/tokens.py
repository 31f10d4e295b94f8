from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode

from socialgate.logging import get_logger
from socialgate.storage.models import Operation, ResourceLocator, TokenScope

logger = get_logger(__name__)

TOKEN_VERSION = "1"
_SIGNED_FIELDS = ("sv", "tn", "spk", "srk", "epk", "erk", "se", "sp")


class TokenCheck(str, Enum):
    OK = "ok"
    # malformed, bad signature, expired, or resource outside the token's range
    INVALID = "invalid"
    # well-formed and in range, but the permission does not cover the operation
    DENIED = "denied"


@dataclass(frozen=True)
class TokenClaims:
    table: str
    start: ResourceLocator
    end: ResourceLocator
    expires_at: int
    scope: TokenScope

    def covers(self, table: str, locator: ResourceLocator) -> bool:
        if table != self.table:
            return False
        key = (locator.partition, locator.row)
        return (self.start.partition, self.start.row) <= key <= (
            self.end.partition,
            self.end.row,
        )


class TokenAuthority:
    """Mints and verifies HMAC-signed, range-bound capability tokens.

    Tokens are query strings in the shape of a shared access signature::

        sv=1&tn=DataTable&spk=USA&srk=Franklin%2CAretha&epk=USA&erk=...&se=...&sp=ru&sig=...

    Callers outside this class must treat them as opaque.
    """

    def __init__(
        self,
        secret: str,
        *,
        default_ttl_hours: int = 24,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret is required")
        self._secret = secret.encode()
        self.default_ttl_hours = default_ttl_hours
        self._clock = clock

    def mint(
        self,
        table: str,
        locator: ResourceLocator,
        scope: TokenScope,
        *,
        ttl_hours: Optional[int] = None,
    ) -> str:
        """Return a token for exactly one (table, partition, row) resource."""
        ttl = self.default_ttl_hours if ttl_hours is None else ttl_hours
        fields = {
            "sv": TOKEN_VERSION,
            "tn": table,
            "spk": locator.partition,
            "srk": locator.row,
            "epk": locator.partition,
            "erk": locator.row,
            "se": str(int(self._clock() + ttl * 3600)),
            "sp": TokenScope(scope).value,
        }
        fields["sig"] = self._sign(fields)
        logger.info(
            "token_minted",
            table=table,
            partition=locator.partition,
            row=locator.row,
            scope=fields["sp"],
            expires=fields["se"],
        )
        return urlencode(fields)

    def inspect(self, token: Optional[str]) -> Optional[TokenClaims]:
        """Parse and authenticate a token; None when malformed, forged or expired."""
        if not token:
            return None
        try:
            fields = dict(parse_qsl(token, keep_blank_values=True, strict_parsing=True))
        except ValueError:
            return None
        if any(name not in fields for name in _SIGNED_FIELDS) or "sig" not in fields:
            return None
        if fields["sv"] != TOKEN_VERSION:
            return None
        if not hmac.compare_digest(self._sign(fields), fields["sig"]):
            logger.warning("token_signature_mismatch", table=fields.get("tn"))
            return None
        try:
            expires_at = int(fields["se"])
            scope = TokenScope(fields["sp"])
        except ValueError:
            return None
        if expires_at <= self._clock():
            logger.info("token_expired", table=fields["tn"], expires=expires_at)
            return None
        return TokenClaims(
            table=fields["tn"],
            start=ResourceLocator(fields["spk"], fields["srk"]),
            end=ResourceLocator(fields["epk"], fields["erk"]),
            expires_at=expires_at,
            scope=scope,
        )

    def verify(
        self,
        token: Optional[str],
        table: str,
        locator: ResourceLocator,
        operation: Operation,
    ) -> TokenCheck:
        claims = self.inspect(token)
        if claims is None or not claims.covers(table, locator):
            return TokenCheck.INVALID
        if not claims.scope.permits(operation):
            return TokenCheck.DENIED
        return TokenCheck.OK

    def _sign(self, fields: dict) -> str:
        canonical = "\n".join(fields[name] for name in _SIGNED_FIELDS)
        return hmac.new(self._secret, canonical.encode(), hashlib.sha256).hexdigest()
