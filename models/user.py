from __future__ import annotations
import re
from enum import Enum
from typing import Optional, List
from uuid import UUID, uuid4
from datetime import datetime, timezone
from pydantic import BaseModel, Field, EmailStr, field_validator

USERNAME_PATTERN = r"^[a-zA-Z0-9_-]+$"
USERNAME_RE = re.compile(USERNAME_PATTERN)
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30

PASSWORD_SPECIALS = "@$!%*?&"


class Role(str, Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


ROLE_RANK = {Role.VIEWER: 1, Role.EDITOR: 2, Role.ADMIN: 3}


def is_valid_username(username: str) -> bool:
    return (
        USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH
        and USERNAME_RE.match(username) is not None
    )


class UserBase(BaseModel):
    username: str = Field(
        ...,
        min_length=USERNAME_MIN_LENGTH,
        max_length=USERNAME_MAX_LENGTH,
        pattern=USERNAME_PATTERN,
        description="Unique handle for the user (letters, digits, '_' and '-').",
        json_schema_extra={"example": "alice"},
    )
    email: EmailStr = Field(
        ...,
        description="Primary email address; unique regardless of case.",
        json_schema_extra={"example": "alice@example.com"},
    )
    full_name: str = Field(
        "",
        max_length=255,
        description="Display name.",
        json_schema_extra={"example": "Alice Liddell"},
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "username": "alice",
                    "email": "alice@example.com",
                    "full_name": "Alice Liddell",
                }
            ]
        }
    }


class UserCreate(UserBase):
    """Creation payload for a User."""
    password: str = Field(
        ..., min_length=8, max_length=72,
        description="Plaintext password (will be hashed server-side).",
        json_schema_extra={"example": "Str0ngP@ss!"}
    )
    role: Optional[Role] = Field(
        None,
        description="Requested role; only honoured when an admin creates the account.",
        json_schema_extra={"example": "editor"},
    )

    @field_validator("password")
    @classmethod
    def _password_strength(cls, v: str) -> str:
        checks = (
            any(c.islower() for c in v),
            any(c.isupper() for c in v),
            any(c.isdigit() for c in v),
            any(c in PASSWORD_SPECIALS for c in v),
        )
        if not all(checks):
            raise ValueError(
                "password needs a lowercase letter, an uppercase letter, "
                f"a digit and one of {PASSWORD_SPECIALS}"
            )
        return v


class UserUpdate(BaseModel):
    """Partial update for a User; supply only fields to change."""
    username: Optional[str] = Field(
        None,
        min_length=USERNAME_MIN_LENGTH,
        max_length=USERNAME_MAX_LENGTH,
        pattern=USERNAME_PATTERN,
        json_schema_extra={"example": "alice_new"},
    )
    email: Optional[EmailStr] = Field(None, json_schema_extra={"example": "alice@newmail.com"})
    full_name: Optional[str] = Field(None, max_length=255, json_schema_extra={"example": "Alice L."})
    role: Optional[Role] = Field(None, json_schema_extra={"example": "editor"})
    password: Optional[str] = Field(None, min_length=8, max_length=72)

    model_config = {
        "extra": "ignore",
        "json_schema_extra": {
            "examples": [
                {"username": "alice_new"},
                {"email": "alice@newmail.com"},
            ]
        },
    }

    def is_empty(self) -> bool:
        return all(
            v is None
            for v in (self.username, self.email, self.full_name, self.role, self.password)
        )


class UserRead(UserBase):
    """Server representation returned to clients and held in the record cache."""
    id: UUID = Field(
        default_factory=uuid4,
        description="Server-generated User ID.",
        json_schema_extra={"example": "99999999-9999-4999-8999-999999999999"},
    )
    role: Role = Field(Role.VIEWER, description="Access level.")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp (UTC).",
        json_schema_extra={"example": "2025-01-15T10:20:30Z"},
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Last update timestamp (UTC).",
        json_schema_extra={"example": "2025-01-16T12:00:00Z"},
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "99999999-9999-4999-8999-999999999999",
                    "username": "alice",
                    "email": "alice@example.com",
                    "full_name": "Alice Liddell",
                    "role": "viewer",
                    "created_at": "2025-01-15T10:20:30Z",
                    "updated_at": "2025-01-16T12:00:00Z",
                }
            ]
        }
    }


class UserInDB(UserRead):
    """Store row including credentials. Never cached, never returned."""
    password_hash: str


class UserListQuery(BaseModel):
    """Raw listing parameters; out-of-range values are clamped, not rejected."""
    page: int = 1
    limit: int = 20
    sort: str = "createdAt"
    order: str = "desc"
    role: Optional[Role] = None
    search: Optional[str] = None


class PageMetadata(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class UserPage(BaseModel):
    items: List[UserRead]
    metadata: PageMetadata
