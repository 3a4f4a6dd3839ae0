from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import List, Optional

import redis.asyncio as aioredis

from podauth.storage.models import RevocationEntry, TokenAuditEvent, utcnow


class RedisCache:
    """Redis-backed revocation list and token audit trail.

    Revocations are stored twice: a per-token key whose TTL matches the revoked
    token's own expiry, and a sorted-set index scored by that expiry so
    ``cleanup_expired`` can purge entries without scanning the keyspace.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    REVOCATION_INDEX_KEY = "auth:revoked:index"
    AUDIT_LOG_KEY = "auth:token_audit"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        audit_max_events: int = 10_000,
    ):
        self.redis_url = redis_url
        self.audit_max_events = audit_max_events
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a safe TTL from an absolute expiry timestamp.

        Naive timestamps are treated as UTC. The result is clamped to at least
        one second since Redis rejects zero or negative expirations.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _revocation_key(token_id: str) -> str:
        return f"auth:revoked:{token_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def add(self, entry: RevocationEntry) -> None:
        payload = json.dumps(
            {
                "token_id": entry.token_id,
                "user_id": entry.user_id,
                "reason": entry.reason,
                "revoked_at": entry.revoked_at.isoformat(),
                "expires_at": entry.expires_at.isoformat(),
            }
        )
        pipe = self.client.pipeline()
        pipe.set(
            self._revocation_key(entry.token_id),
            payload,
            ex=self._ttl_seconds(entry.expires_at),
        )
        pipe.zadd(self.REVOCATION_INDEX_KEY, {entry.token_id: entry.expires_at.timestamp()})
        await pipe.execute()

    async def contains(self, token_id: str) -> bool:
        return bool(await self.client.exists(self._revocation_key(token_id)))

    async def get_entry(self, token_id: str) -> Optional[RevocationEntry]:
        raw = await self.client.get(self._revocation_key(token_id))
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return RevocationEntry(
                token_id=data["token_id"],
                user_id=data["user_id"],
                reason=data["reason"],
                revoked_at=datetime.fromisoformat(data["revoked_at"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def remove(self, token_id: str) -> None:
        pipe = self.client.pipeline()
        pipe.delete(self._revocation_key(token_id))
        pipe.zrem(self.REVOCATION_INDEX_KEY, token_id)
        await pipe.execute()

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()).timestamp()
        expired: List[str] = await self.client.zrangebyscore(
            self.REVOCATION_INDEX_KEY, "-inf", cutoff
        )
        if not expired:
            return 0
        pipe = self.client.pipeline()
        pipe.delete(*[self._revocation_key(token_id) for token_id in expired])
        pipe.zrem(self.REVOCATION_INDEX_KEY, *expired)
        await pipe.execute()
        return len(expired)

    async def record(self, event: TokenAuditEvent) -> None:
        payload = json.dumps(
            {
                "event_type": event.event_type,
                "success": event.success,
                "token_id": event.token_id,
                "user_id": event.user_id,
                "session_id": event.session_id,
                "reason": event.reason,
                "ip_address": event.ip_address,
                "user_agent": event.user_agent,
                "timestamp": event.timestamp.isoformat(),
            }
        )
        pipe = self.client.pipeline()
        pipe.lpush(self.AUDIT_LOG_KEY, payload)
        pipe.ltrim(self.AUDIT_LOG_KEY, 0, self.audit_max_events - 1)
        await pipe.execute()

    async def recent_audit_events(self, limit: int = 100) -> List[dict]:
        raw_events = await self.client.lrange(self.AUDIT_LOG_KEY, 0, max(0, limit - 1))
        events = []
        for raw in raw_events:
            try:
                events.append(json.loads(raw))
            except (json.JSONDecodeError, TypeError):
                continue
        return events

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
