import asyncio
from app.platform.ports.run_guard import RunGuardPort

class InMemoryRunGuard(RunGuardPort):
    """Single-process guard; enough when one worker drains the ingestion queue."""

    def __init__(self):
        self._held: set[str] = set()
        self._lock = asyncio.Lock()

    async def acquire(self, key: str) -> bool:
        async with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    async def release(self, key: str) -> None:
        async with self._lock:
            self._held.discard(key)
