from __future__ import annotations

from typing import Dict, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from socialgate.logging import get_logger
from socialgate.service.errors import BadRequestError, ForbiddenError, NotFoundError
from socialgate.service.tokens import TokenAuthority
from socialgate.storage.errors import AccessDenied, RecordNotFound
from socialgate.storage.models import (
    Credential,
    Operation,
    ProfileRecord,
    ResourceLocator,
    TokenScope,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class ProfileStore(Protocol):
    def save_credential(self, credential: Credential) -> Credential: ...

    def get_credential(self, user_id: str) -> Optional[Credential]: ...

    def get(
        self, table: str, partition: str, row: str, token: Optional[str]
    ) -> ProfileRecord: ...

    def merge(
        self,
        table: str,
        partition: str,
        row: str,
        token: Optional[str],
        properties: Dict[str, str],
        *,
        if_match: Optional[str] = None,
    ) -> ProfileRecord: ...


class AuthorizationGate:
    """Credential check, token minting and scope enforcement for profile access.

    The gate owns the scope model: an update attempted under a read-only scope
    is refused here, before the store ever sees it. Binding, expiry and
    resource-range checks belong to the store, which reports any mismatch the
    same way it reports an absent record.
    """

    def __init__(
        self,
        store: ProfileStore,
        tokens: TokenAuthority,
        *,
        table: str = "DataTable",
        token_ttl_hours: int = 24,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.table = table
        self.token_ttl_hours = token_ttl_hours
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def register_credential(
        self, user_id: str, password: str, partition: str, row: str
    ) -> Credential:
        """Hash and store a credential bound to one profile record."""
        pwd_hash, algo = self._hash_password(password)
        credential = Credential(
            user_id=user_id,
            password_hash=pwd_hash,
            password_algo=algo,
            partition=partition,
            row=row,
        )
        self.store.save_credential(credential)
        self.logger.info("credential_registered", user_id=user_id)
        return credential

    def verify_password(self, credential: Credential, password: str) -> bool:
        if credential.password_algo != PASSWORD_ALGO:
            self.logger.warning(
                "password_algo_mismatch",
                user_id=credential.user_id,
                algo=credential.password_algo,
            )
            return False
        try:
            return self._pwd_hasher.verify(credential.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning(
                "password_verification_failed", user_id=credential.user_id
            )
            return False

    def request_token(
        self, user_id: str, password: str, scope: TokenScope
    ) -> Tuple[str, ResourceLocator]:
        """Mint a token for the caller's own profile record.

        Unknown users and wrong passwords are reported identically.

        Raises:
            NotFoundError: unknown user or wrong password
            BadRequestError: the credential is not bound to a profile record
        """
        credential = self.store.get_credential(user_id)
        if credential is None or not self.verify_password(credential, password):
            self.logger.info("token_request_rejected", user_id=user_id)
            raise NotFoundError("user not found")
        locator = credential.locator
        if locator is None:
            raise BadRequestError(
                "credential has no profile binding", detail={"user_id": user_id}
            )
        token = self.tokens.mint(
            self.table, locator, scope, ttl_hours=self.token_ttl_hours
        )
        return token, locator

    def authorize_and_forward(
        self,
        token: Optional[str],
        scope: TokenScope,
        operation: Operation,
        locator: ResourceLocator,
        properties: Optional[Dict[str, str]] = None,
        *,
        if_match: Optional[str] = None,
    ) -> ProfileRecord:
        """Check the claimed scope locally, then forward to the profile store.

        Raises:
            ForbiddenError: the scope (claimed or carried by the token) does not
                permit the operation
            NotFoundError: token invalid, expired or bound elsewhere, or record absent
        """
        if not TokenScope(scope).permits(operation):
            self.logger.warning(
                "scope_rejected",
                scope=TokenScope(scope).value,
                operation=operation.value,
                partition=locator.partition,
                row=locator.row,
            )
            raise ForbiddenError(
                "token scope does not permit this operation",
                detail={"operation": operation.value},
            )
        try:
            if operation is Operation.READ:
                return self.store.get(self.table, locator.partition, locator.row, token)
            return self.store.merge(
                self.table,
                locator.partition,
                locator.row,
                token,
                properties or {},
                if_match=if_match,
            )
        except RecordNotFound as exc:
            raise NotFoundError("resource not found") from exc
        except AccessDenied as exc:
            raise ForbiddenError(
                "token scope does not permit this operation",
                detail={"operation": operation.value},
            ) from exc

    def read_profile(
        self, token: Optional[str], scope: TokenScope, locator: ResourceLocator
    ) -> ProfileRecord:
        return self.authorize_and_forward(token, scope, Operation.READ, locator)

    def merge_profile(
        self,
        token: Optional[str],
        scope: TokenScope,
        locator: ResourceLocator,
        properties: Dict[str, str],
        *,
        if_match: Optional[str] = None,
    ) -> ProfileRecord:
        return self.authorize_and_forward(
            token, scope, Operation.UPDATE, locator, properties, if_match=if_match
        )

    def scope_of(self, token: Optional[str]) -> Optional[TokenScope]:
        """Scope carried by a presented bearer token, or None when it does not verify."""
        claims = self.tokens.inspect(token)
        return claims.scope if claims else None

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
