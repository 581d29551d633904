from __future__ import annotations

import hashlib
import json
from datetime import date, datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from accountkit.storage.models import PendingRegistration
from accountkit.storage.pending import (
    CONSUME_MISMATCH,
    CONSUME_MISSING,
    CONSUME_OK,
    ConsumeResult,
)


class RedisCache:
    """Redis-backed store for pending registrations shared across workers."""

    # Atomic compare-and-delete: the entry is removed only if the digest of
    # the submitted code matches, so concurrent verifications consume it once.
    _CLAIM_PENDING_SCRIPT = """
local stored = redis.call('HGET', KEYS[1], 'otp_digest')
if not stored then
  return {0}
end
if stored ~= ARGV[1] then
  return {1}
end
local payload = redis.call('HGET', KEYS[1], 'payload')
redis.call('DEL', KEYS[1])
return {2, payload}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._claim_pending = self.client.register_script(self._CLAIM_PENDING_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry, clamped to at least 1 second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _pending_key(email: str) -> str:
        digest = hashlib.sha256(email.encode()).hexdigest()
        return f"auth:pending:{digest}"

    @staticmethod
    def _otp_digest(otp: str) -> str:
        return hashlib.sha256(otp.encode()).hexdigest()

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _serialize(pending: PendingRegistration) -> str:
        return json.dumps(
            {
                "name": pending.name,
                "username": pending.username,
                "email": pending.email,
                "password_hash": pending.password_hash,
                "otp": pending.otp,
                "date_of_birth": pending.date_of_birth.isoformat()
                if pending.date_of_birth
                else None,
                "created_at": pending.created_at.isoformat(),
                "expires_at": pending.expires_at.isoformat() if pending.expires_at else None,
            }
        )

    @staticmethod
    def _deserialize(raw: Optional[str]) -> Optional[PendingRegistration]:
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        dob = data.get("date_of_birth")
        expires = data.get("expires_at")
        return PendingRegistration(
            name=data["name"],
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            otp=data["otp"],
            date_of_birth=date.fromisoformat(dob) if dob else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(expires) if expires else None,
        )

    async def put(self, pending: PendingRegistration) -> None:
        key = self._pending_key(pending.email)
        pipe = self.client.pipeline(transaction=True)
        # Replace, never merge, a previous registration for the same email
        pipe.delete(key)
        pipe.hset(
            key,
            mapping={
                "otp_digest": self._otp_digest(pending.otp),
                "payload": self._serialize(pending),
            },
        )
        if pending.expires_at is not None:
            pipe.expire(key, self._ttl_seconds(pending.expires_at))
        await pipe.execute()

    async def get(self, email: str) -> Optional[PendingRegistration]:
        raw = await self.client.hget(self._pending_key(email), "payload")
        return self._deserialize(raw)

    async def consume(self, email: str, otp: str) -> ConsumeResult:
        result = await self._claim_pending(
            keys=[self._pending_key(email)], args=[self._otp_digest(otp)]
        )
        status = int(result[0]) if result else 0
        if status == 0:
            return CONSUME_MISSING, None
        if status == 1:
            return CONSUME_MISMATCH, None
        pending = self._deserialize(result[1] if len(result) > 1 else None)
        if pending is None:
            return CONSUME_MISSING, None
        return CONSUME_OK, pending

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown or runtime reset."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
