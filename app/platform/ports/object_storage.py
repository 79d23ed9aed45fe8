from typing import Protocol, runtime_checkable


class StorageError(RuntimeError):
    """Transport or provider failure talking to the blob store."""


class ObjectNotFound(StorageError):
    def __init__(self, key: str):
        super().__init__(f"object not found: {key}")
        self.key = key


@runtime_checkable
class ObjectStoragePort(Protocol):
    # Reads after a put to the same key are expected to see the new bytes.
    def put_bytes(self, key: str, data: bytes, content_type: str) -> None: ...
    def get_bytes(self, key: str) -> bytes: ...
    def delete(self, key: str) -> None: ...
    def list_keys(self, prefix: str) -> list[str]: ...
    def presign_put(self, key: str, content_type: str, content_length: int, expires_seconds: int = 300) -> str: ...
    def presign_download(self, key: str, expires_seconds: int = 900) -> str: ...
