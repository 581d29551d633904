from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    name: str
    username: str
    email: str
    password_hash: str
    date_of_birth: Optional[date] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        *,
        name: str,
        username: str,
        email: str,
        password_hash: str,
        date_of_birth: Optional[date] = None,
        email_verified: bool = True,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            username=username,
            email=email,
            password_hash=password_hash,
            date_of_birth=date_of_birth,
            email_verified=email_verified,
        )


@dataclass
class Session:
    """A refresh-token session; the row is the token's validity."""

    id: str
    username: str
    refresh_token: str
    jti: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        username: str,
        refresh_token: str,
        jti: str,
        ttl_days: int = 7,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            refresh_token=refresh_token,
            jti=jti,
            created_at=now,
            expires_at=now + timedelta(days=ttl_days),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class PendingRegistration:
    """Unverified registration awaiting its one-time code.

    Only the password hash is kept; the plaintext never leaves ``register``.
    """

    name: str
    username: str
    email: str
    password_hash: str
    otp: str
    date_of_birth: Optional[date] = None
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    jti: str
    refresh_expires_at: datetime
    token_type: str = "bearer"
