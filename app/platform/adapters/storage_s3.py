import logging
import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from app.platform.ports.object_storage import ObjectStoragePort, ObjectNotFound, StorageError
from app.core.config import settings

log = logging.getLogger("storage.s3")

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}

class S3Storage(ObjectStoragePort):
    """S3-compatible bucket (Cloudflare R2 in production, MinIO locally)."""

    def __init__(self):
        missing = [
            name for name in ("S3_BUCKET", "S3_ACCESS_KEY", "S3_SECRET_KEY")
            if not getattr(settings, name)
        ]
        if missing:
            raise RuntimeError(f"S3 storage not configured: {', '.join(missing)} unset")
        session = boto3.session.Session(
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
            region_name=settings.S3_REGION,
        )
        self.s3 = session.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            config=Config(signature_version="s3v4"),
        )
        self.bucket = settings.S3_BUCKET

    def presign_put(self, key: str, content_type: str, content_length: int, expires_seconds: int = 300) -> str:
        # ContentType/ContentLength are signed, so the URL only accepts this exact upload
        try:
            return self.s3.generate_presigned_url(
                "put_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "ContentType": content_type,
                    "ContentLength": content_length,
                },
                ExpiresIn=expires_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"presign failed for {key}: {e}") from e

    def presign_download(self, key: str, expires_seconds: int = 900) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"put failed for {key}: {e}") from e
        log.debug("PUT %s (%d bytes, %s)", key, len(data), content_type)

    def get_bytes(self, key: str) -> bytes:
        try:
            resp = self.s3.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise ObjectNotFound(key) from e
            raise StorageError(f"get failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"get failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"delete failed for {key}: {e}") from e
        log.debug("DELETE %s", key)

    def list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        try:
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []) if obj.get("Key"))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"list failed for {prefix}: {e}") from e
        return keys
