import json
import logging
from app.platform.ports.event_bus import EventBusPort
from app.core.config import settings
from app.core.redis import redis_manager

log = logging.getLogger("bus.redis")

class RedisEventBus(EventBusPort):
    """Publishes media events to a Redis stream; the web app consumes them to revalidate pages."""

    def __init__(self):
        self.redis = redis_manager.client()
        self.stream = settings.REDIS_STREAM or "createspot.media"

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        entry = {
            "topic": topic,
            "key": key,
            "event_type": str(value.get("event_type", "")),
            "value": json.dumps(value, default=str),
            "headers": json.dumps(headers or {}),
        }
        entry_id = await self.redis.xadd(self.stream, entry, maxlen=settings.REDIS_STREAM_MAXLEN, approximate=True)
        log.debug("XADD stream=%s id=%s topic=%s key=%s", self.stream, entry_id, topic, key)
