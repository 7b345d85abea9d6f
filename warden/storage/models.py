from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    """Namespaces for single-use tokens; a token of one kind never satisfies another."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    id: str
    email: str
    username: str
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(cls, email: str, username: str) -> "User":
        return cls(id=str(uuid.uuid4()), email=email, username=username)


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    """Stored form of an issued refresh token; only the digest is kept."""

    id: str
    user_id: str
    hashed_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SingleUseToken:
    id: str
    kind: TokenKind
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls, kind: TokenKind, token: str, user_id: str, expires_at: datetime
    ) -> "SingleUseToken":
        return cls(
            id=str(uuid.uuid4()),
            kind=TokenKind(kind),
            token=token,
            user_id=user_id,
            expires_at=expires_at,
        )

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and not self.is_expired(now)


@dataclass
class AuthenticatedUser:
    """Result of a successful login or refresh; never persisted."""

    user: User
    access_token: str
    refresh_token: str
