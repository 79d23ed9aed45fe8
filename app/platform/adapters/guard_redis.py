import logging
import uuid
from app.platform.ports.run_guard import RunGuardPort
from app.core.config import settings
from app.core.redis import redis_manager

log = logging.getLogger("guard.redis")

# delete only if the key still holds our token; a lapsed TTL may have let another worker in
_RELEASE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

class RedisRunGuard(RunGuardPort):
    """Cross-process guard: SET NX with a TTL so a crashed worker cannot hold a key forever."""

    def __init__(self, ttl_seconds: int | None = None, client=None):
        self.redis = client or redis_manager.client()
        self.ttl_seconds = ttl_seconds or settings.RUN_GUARD_TTL_SECONDS
        self._tokens: dict[str, str] = {}

    def _name(self, key: str) -> str:
        return f"media:ingest:run:{key}"

    async def acquire(self, key: str) -> bool:
        token = uuid.uuid4().hex
        ok = await self.redis.set(self._name(key), token, nx=True, ex=self.ttl_seconds)
        if ok:
            self._tokens[key] = token
        log.debug("acquire %s -> %s", key, bool(ok))
        return bool(ok)

    async def release(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is None:
            return
        released = await self.redis.eval(_RELEASE, 1, self._name(key), token)
        if not released:
            log.warning("Run guard for %s expired before release; left to its new holder", key)
