import os
from urllib.parse import quote, urlencode
from app.platform.ports.object_storage import ObjectStoragePort, ObjectNotFound, StorageError
from app.core.config import settings

class LocalFilesystemStorage(ObjectStoragePort):
    def __init__(self, root: str | None = None):
        self.root = os.path.abspath(root or settings.LOCAL_STORAGE_ROOT)
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        parts = [p for p in key.strip("/").split("/") if p not in ("", ".", "..")]
        if not parts:
            raise StorageError(f"invalid key: {key!r}")
        return os.path.join(self.root, *parts)

    def presign_put(self, key: str, content_type: str, content_length: int, expires_seconds: int = 300) -> str:
        # For local dev there is no signer; hand back a pseudo-URL describing the upload.
        query = urlencode({"contentType": content_type, "contentLength": content_length, "expires": expires_seconds})
        return f"file://{quote(self._path(key))}?{query}"

    def presign_download(self, key: str, expires_seconds: int = 900) -> str:
        # For local dev, expose a static-like path; in real setups, serve via nginx or an API proxy.
        return f"file://{quote(self._path(key))}"

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = path + ".part"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    def get_bytes(self, key: str) -> bytes:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise ObjectNotFound(key) from e
        except OSError as e:
            raise StorageError(f"read failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)

    def list_keys(self, prefix: str) -> list[str]:
        keys = []
        for dirpath, _dirs, files in os.walk(self.root):
            for name in files:
                if name.endswith(".part"):
                    continue
                rel = os.path.relpath(os.path.join(dirpath, name), self.root).replace(os.sep, "/")
                if rel.startswith(prefix):
                    keys.append(rel)
        return sorted(keys)
