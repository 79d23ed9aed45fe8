from typing import Protocol, runtime_checkable

@runtime_checkable
class RunGuardPort(Protocol):
    async def acquire(self, key: str) -> bool: ...
    async def release(self, key: str) -> None: ...
