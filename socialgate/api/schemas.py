from __future__ import annotations

import unicodedata
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_STRING_LENGTH = 4096
MAX_PROPERTIES = 64

_VALID_ERROR_CODES = {
    "validation_error",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
    "service_unavailable",
}


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Cf")


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class PasswordRequest(BaseModel):
    """Body of SignOn and the token requests: exactly one ``Password`` field."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    password: str = Field(..., alias="Password", min_length=1, max_length=1024)


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    properties: Dict[str, str] = Field(..., alias="Properties")
    if_match: Optional[str] = Field(default=None, alias="IfMatch", max_length=128)

    @field_validator("properties")
    @classmethod
    def _validate_properties(cls, value: Dict[str, str]) -> Dict[str, str]:
        if not value:
            raise ValueError("at least one property is required")
        if len(value) > MAX_PROPERTIES:
            raise ValueError(f"at most {MAX_PROPERTIES} properties per merge")
        for name, prop in value.items():
            if not name or len(name) > 255:
                raise ValueError("property names must be 1-255 characters")
            if len(prop) > MAX_STRING_LENGTH * 16:
                raise ValueError(f"property '{name}' too long")
        return value


class PushStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    friends: str = Field(default="", alias="Friends", max_length=MAX_STRING_LENGTH * 16)


class SessionResponse(BaseModel):
    user_id: str
    partition: str
    row: str
    scope: str
    expires_at: str


class TokenResponse(BaseModel):
    token: str
    partition: str
    row: str
    scope: str


class FriendEntry(BaseModel):
    country: str
    name: str


class FriendListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    friends: str = Field(..., alias="Friends")
    entries: List[FriendEntry] = Field(default_factory=list)


class ProfileResponse(BaseModel):
    table: str
    partition: str
    row: str
    properties: Dict[str, str]
    etag: str


class FanoutReportResponse(BaseModel):
    status: str
    attempted: int
    delivered: List[FriendEntry] = Field(default_factory=list)
    skipped: List[FriendEntry] = Field(default_factory=list)
    failed: List[FriendEntry] = Field(default_factory=list)
    timed_out: List[FriendEntry] = Field(default_factory=list)


def normalize_path_segment(value: str) -> str:
    """Normalize a user-supplied path segment (user id, country, name)."""
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("path segment must not be empty")
    if len(normalized) > MAX_STRING_LENGTH:
        raise ValueError("path segment too long")
    return normalized
