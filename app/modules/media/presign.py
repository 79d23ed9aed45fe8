"""Short-lived, single-key upload credentials for direct-to-storage uploads."""

import logging
import uuid
from dataclasses import dataclass
from typing import Callable

from app.core.config import settings
from app.modules.imaging.image_io import ACCEPTED_CONTENT_TYPES, extension_for_content_type
from app.modules.media.keys import SUBMISSION_SCOPED, UploadKind, new_object_key, public_url_for
from app.platform.ports.object_storage import ObjectStoragePort
from app.platform.ports.record_store import RecordStorePort

log = logging.getLogger("media.presign")


class UploadAuthorizationError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidUploadRequest(UploadAuthorizationError):
    status_code = 400


class Forbidden(UploadAuthorizationError):
    status_code = 403


class NotFound(UploadAuthorizationError):
    status_code = 404


@dataclass(frozen=True)
class UploadAuthorization:
    key: str
    upload_url: str
    public_url: str
    expires_in: int


class UploadAuthorizationIssuer:
    def __init__(
        self,
        *,
        storage_factory: Callable[[], ObjectStoragePort],
        record_store: RecordStorePort,
        max_bytes: int | None = None,
        expires_seconds: int | None = None,
        public_base_url: str | None = None,
    ):
        self.storage_factory = storage_factory
        self.records = record_store
        self.max_bytes = max_bytes or settings.MAX_PRESIGN_UPLOAD_BYTES
        self.expires_seconds = expires_seconds or settings.PRESIGN_EXPIRES_SECONDS
        self.public_base_url = public_base_url

    async def issue(
        self,
        owner_id: uuid.UUID,
        kind: UploadKind | str,
        content_type: str,
        content_length: int,
        submission_id: uuid.UUID | None = None,
    ) -> UploadAuthorization:
        """Validate the request and sign a PUT for one fresh key.

        Checks run cheapest first and the ownership lookup runs last, so a
        malformed request never touches the record store.
        """
        try:
            kind = UploadKind(kind)
        except ValueError:
            raise InvalidUploadRequest(f"invalid upload type: {kind}")
        if content_type not in ACCEPTED_CONTENT_TYPES:
            raise InvalidUploadRequest(f"invalid file type: {content_type}")
        if content_length is None or content_length <= 0:
            raise InvalidUploadRequest("file size must be positive")
        if content_length > self.max_bytes:
            raise InvalidUploadRequest(f"file too large: {content_length} bytes (max {self.max_bytes})")

        if kind in SUBMISSION_SCOPED:
            if submission_id is None:
                raise InvalidUploadRequest(f"submissionId is required for {kind.value} uploads")
            owner = await self.records.get_submission_owner(submission_id)
            if owner is None:
                raise NotFound("submission not found")
            if owner != owner_id:
                raise Forbidden("not the owner of this submission")
            scope_id = submission_id
        else:
            scope_id = owner_id

        key = new_object_key(kind, scope_id, extension_for_content_type(content_type))
        storage = self.storage_factory()
        upload_url = storage.presign_put(key, content_type, content_length, expires_seconds=self.expires_seconds)
        log.info("Issued %s upload credential for %s (%d bytes, %ss)", kind.value, key, content_length, self.expires_seconds)
        return UploadAuthorization(
            key=key,
            upload_url=upload_url,
            public_url=public_url_for(key, self.public_base_url),
            expires_in=self.expires_seconds,
        )
