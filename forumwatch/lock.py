"""
Best-effort cluster-wide mutual exclusion for the refresh cycle.

A Redis key set with NX + EX acts as a lease: whoever sets it owns the cycle
until it is released or expires. Long cycles renew it between batches; the
expiry covers holders that crash before releasing. Without Redis there is
nothing to coordinate with, so acquisition always succeeds.
"""

import uuid
from typing import Any, Optional

from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)

_LOCAL_TOKEN = "local"

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Push the expiry out only if the key still holds our token
_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class LeaseLock:
    def __init__(self, redis_client: Any, key: str, ttl_seconds: int = 300):
        self.redis = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    async def acquire(self) -> bool:
        """
        Try once, never wait. Returns False if another holder owns the lease.
        If Redis is configured but unreachable the lease degrades to
        process-local, like the rest of the cache.
        """
        if self.redis is None:
            self._token = _LOCAL_TOKEN
            return True
        token = uuid.uuid4().hex
        try:
            acquired = await self.redis.set(self.key, token, nx=True, ex=self.ttl_seconds)
        except Exception as exc:
            logger.warning("lease_acquire_degraded", key=self.key, error=str(exc))
            self._token = _LOCAL_TOKEN
            return True
        if not acquired:
            return False
        self._token = token
        return True

    async def extend(self) -> bool:
        """
        Reset the lease to a full TTL. Returns False if the lease is no longer
        ours (expired and taken, or cleared), in which case the holder must stop.
        """
        if self._token is None:
            return False
        if self._token == _LOCAL_TOKEN or self.redis is None:
            return True
        try:
            extended = await self.redis.eval(
                _EXTEND_SCRIPT, 1, self.key, self._token, int(self.ttl_seconds * 1000)
            )
        except Exception as exc:
            logger.warning("lease_extend_failed", key=self.key, error=str(exc))
            return True
        if not extended:
            logger.warning("lease_lost", key=self.key)
            self._token = None
            return False
        return True

    async def release(self) -> None:
        token, self._token = self._token, None
        if token is None or token == _LOCAL_TOKEN or self.redis is None:
            return
        try:
            await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, token)
        except Exception as exc:
            # The lease still expires on its own
            logger.warning("lease_release_failed", key=self.key, error=str(exc))
