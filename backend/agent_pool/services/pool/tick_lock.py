"""Redis-backed lease that keeps concurrent processes from ticking at once."""

from __future__ import annotations

import secrets

import redis

from agent_pool.core.logging import get_logger

logger = get_logger(__name__)

# Delete the key only if it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def _redis_client(redis_url: str) -> redis.Redis:
    return redis.Redis.from_url(redis_url)


class TickLease:
    """A `SET NX EX` lease; the TTL frees the key if the holder dies mid-tick."""

    def __init__(
        self,
        key: str,
        ttl_seconds: int,
        *,
        redis_url: str = "",
        client: redis.Redis | None = None,
    ) -> None:
        if client is None:
            client = _redis_client(redis_url)
        self._client = client
        self._key = key
        self._ttl_seconds = ttl_seconds
        self._token: str | None = None

    def acquire(self) -> bool:
        token = secrets.token_hex(16)
        try:
            acquired = bool(self._client.set(self._key, token, nx=True, ex=self._ttl_seconds))
        except redis.RedisError:
            logger.exception("pool.tick_lock.acquire_failed", extra={"key": self._key})
            return False
        if acquired:
            self._token = token
        else:
            logger.debug("pool.tick_lock.held_elsewhere", extra={"key": self._key})
        return acquired

    def release(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        try:
            self._client.eval(_RELEASE_SCRIPT, 1, self._key, token)
        except redis.RedisError:
            logger.exception("pool.tick_lock.release_failed", extra={"key": self._key})
