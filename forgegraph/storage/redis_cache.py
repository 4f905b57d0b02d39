from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis


class RedisApprovalNotifier:
    """Pushes approval resolutions to Human-Input steps waiting in any process.

    The resolver appends a marker to ``approval:resolved:<id>`` and the waiting
    step blocks on BLPOP for it, so the step wakes as soon as a decision is
    recorded instead of polling the approval table. The marker list outlives
    the publish call (``ttl_seconds``), so a resolution that lands before the
    step starts waiting is not lost.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        socket_timeout: float = 5.0,
        ttl_seconds: int = 3600,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        # no socket_timeout on the blocking client: BLPOP carries its own
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(approval_id: str) -> str:
        return f"approval:resolved:{approval_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling push notifications."""
        from redis import Redis

        # short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def publish_resolution(self, approval_id: str, status: str = "resolved") -> None:
        key = self._key(approval_id)
        pipe = self.client.pipeline()
        pipe.rpush(key, status)
        pipe.expire(key, self.ttl_seconds)
        await pipe.execute()

    async def wait_for_approval_update(self, approval_id: str, timeout: float) -> bool:
        """Block until a resolution marker arrives; False after ``timeout`` seconds."""
        if timeout <= 0:
            return False
        result = await self.client.blpop([self._key(approval_id)], timeout=timeout)
        return result is not None

    async def close(self) -> None:
        await self.client.aclose()
