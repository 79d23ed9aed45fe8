from typing import Protocol, runtime_checkable

# topic every media lifecycle event is published under
MEDIA_TOPIC = "media.assets"

@runtime_checkable
class EventBusPort(Protocol):
    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None: ...
