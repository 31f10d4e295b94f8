from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from socialgate.logging import get_logger
from socialgate.service.tokens import TokenAuthority, TokenCheck
from socialgate.storage.errors import (
    AccessDenied,
    ConstraintViolation,
    PreconditionFailed,
    RecordNotFound,
)
from socialgate.storage.models import (
    Credential,
    Operation,
    ProfileRecord,
    ResourceLocator,
)

_Key = Tuple[str, str, str]


class MemoryStore:
    """In-memory credential and profile store persisted as a JSON snapshot.

    Profile operations come in two flavours. ``get``/``merge`` take a capability
    token and defer to the token authority for binding, expiry and permission
    checks. ``get_entity``/``merge_entity``/``put_entity``/``delete_entity`` are
    privileged and used by service-internal code (fan-out, seeding).
    """

    def __init__(self, tokens: TokenAuthority, fs_root: str = "/tmp/socialgate") -> None:
        self.logger = get_logger(__name__)
        self.tokens = tokens
        self.credentials: Dict[str, Credential] = {}
        self.profiles: Dict[_Key, ProfileRecord] = {}
        # RLock so privileged helpers can nest inside token-gated calls
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "profile_store.json"

    def verify_connection(self) -> None:
        """Memory store is always reachable; kept for health-check symmetry."""

    # credentials
    def save_credential(self, credential: Credential) -> Credential:
        with self._data_lock:
            if credential.user_id in self.credentials:
                raise ConstraintViolation(
                    "credential already exists", {"user_id": credential.user_id}
                )
            self.credentials[credential.user_id] = credential
            self._persist_state()
            return credential

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def delete_credential(self, user_id: str) -> bool:
        with self._data_lock:
            if self.credentials.pop(user_id, None) is None:
                return False
            self._persist_state()
            return True

    # privileged profile access
    def put_entity(
        self, table: str, partition: str, row: str, properties: Dict[str, str]
    ) -> ProfileRecord:
        with self._data_lock:
            record = ProfileRecord(
                table=table,
                partition=partition,
                row=row,
                properties={k: str(v) for k, v in properties.items()},
            )
            self.profiles[(table, partition, row)] = record
            self._persist_state()
            return self._copy(record)

    def get_entity(self, table: str, partition: str, row: str) -> Optional[ProfileRecord]:
        with self._data_lock:
            record = self.profiles.get((table, partition, row))
            return self._copy(record) if record else None

    def merge_entity(
        self,
        table: str,
        partition: str,
        row: str,
        properties: Dict[str, str],
        *,
        if_match: Optional[str] = None,
    ) -> Optional[ProfileRecord]:
        """Merge properties into an existing record; None when it does not exist.

        Raises:
            PreconditionFailed: ``if_match`` is given and differs from the record's ETag
        """
        with self._data_lock:
            record = self.profiles.get((table, partition, row))
            if record is None:
                return None
            if if_match is not None and if_match != record.etag:
                raise PreconditionFailed(
                    "profile changed since it was read",
                    expected=if_match,
                    actual=record.etag,
                )
            record.properties.update({k: str(v) for k, v in properties.items()})
            record.etag = uuid.uuid4().hex
            self._persist_state()
            return self._copy(record)

    def delete_entity(self, table: str, partition: str, row: str) -> bool:
        with self._data_lock:
            if self.profiles.pop((table, partition, row), None) is None:
                return False
            self._persist_state()
            return True

    # token-gated profile access
    def get(self, table: str, partition: str, row: str, token: Optional[str]) -> ProfileRecord:
        """Read a profile through a capability token.

        Raises:
            RecordNotFound: token invalid/expired/out of range, or record absent
        """
        self._check_token(token, table, partition, row, Operation.READ)
        record = self.get_entity(table, partition, row)
        if record is None:
            raise RecordNotFound(f"{table}/{partition}/{row}")
        return record

    def merge(
        self,
        table: str,
        partition: str,
        row: str,
        token: Optional[str],
        properties: Dict[str, str],
        *,
        if_match: Optional[str] = None,
    ) -> ProfileRecord:
        """Merge properties through a capability token.

        Raises:
            RecordNotFound: token invalid/expired/out of range, or record absent
            AccessDenied: token is valid for the record but read-only
            PreconditionFailed: ETag mismatch
        """
        self._check_token(token, table, partition, row, Operation.UPDATE)
        record = self.merge_entity(table, partition, row, properties, if_match=if_match)
        if record is None:
            raise RecordNotFound(f"{table}/{partition}/{row}")
        return record

    def _check_token(
        self,
        token: Optional[str],
        table: str,
        partition: str,
        row: str,
        operation: Operation,
    ) -> None:
        verdict = self.tokens.verify(token, table, ResourceLocator(partition, row), operation)
        if verdict is TokenCheck.INVALID:
            self.logger.info(
                "profile_token_rejected",
                table=table,
                partition=partition,
                row=row,
                operation=operation.value,
            )
            raise RecordNotFound(f"{table}/{partition}/{row}")
        if verdict is TokenCheck.DENIED:
            raise AccessDenied(f"token does not permit {operation.value}")

    @staticmethod
    def _copy(record: ProfileRecord) -> ProfileRecord:
        return ProfileRecord(
            table=record.table,
            partition=record.partition,
            row=record.row,
            properties=dict(record.properties),
            etag=record.etag,
        )

    def _persist_state(self) -> None:
        state = {
            "credentials": [
                {
                    "user_id": c.user_id,
                    "password_hash": c.password_hash,
                    "password_algo": c.password_algo,
                    "partition": c.partition,
                    "row": c.row,
                    "created_at": c.created_at.isoformat(),
                }
                for c in self.credentials.values()
            ],
            "profiles": [
                {
                    "table": r.table,
                    "partition": r.partition,
                    "row": r.row,
                    "properties": r.properties,
                    "etag": r.etag,
                }
                for r in self.profiles.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.credentials = {
            entry["user_id"]: Credential(
                user_id=entry["user_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", ""),
                partition=entry.get("partition"),
                row=entry.get("row"),
                created_at=datetime.fromisoformat(entry["created_at"]),
            )
            for entry in data.get("credentials", [])
        }
        self.profiles = {}
        for entry in data.get("profiles", []):
            record = ProfileRecord(
                table=entry["table"],
                partition=entry["partition"],
                row=entry["row"],
                properties=dict(entry.get("properties", {})),
                etag=entry.get("etag") or uuid.uuid4().hex,
            )
            self.profiles[(record.table, record.partition, record.row)] = record
        self.logger.info(
            "memory_store_state_loaded",
            credentials=len(self.credentials),
            profiles=len(self.profiles),
        )
        return True
