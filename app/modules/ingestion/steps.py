"""Individual ingestion steps.

Every step is a plain coroutine taking its collaborators as arguments and
returning a ``Result``; blocking blob I/O and Pillow work run in a thread.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from app.modules.imaging.encoder import EncodedImage, encode_canonical
from app.modules.imaging.image_io import UnreadableImage, sniff
from app.modules.imaging.metadata import embed_attribution
from app.modules.imaging.watermark import WatermarkOptions, apply_watermark, coerce_position
from app.modules.ingestion.result import Err, ErrorKind, Ok, Result, StepError
from app.modules.media.keys import MediaRole, kind_for_role, new_object_key
from app.platform.ports.object_storage import ObjectNotFound, ObjectStoragePort, StorageError
from app.platform.ports.record_store import (
    MediaAssetPatch, MediaAssetRef, ProcessingMetadata, ProtectionSettings, RecordNotFound, RecordStorePort,
)

log = logging.getLogger("media.ingest")


@dataclass(frozen=True)
class WatermarkDecision:
    data: bytes
    watermarked: bool
    attributed: bool = False


async def read_current_key(records: RecordStorePort, ref: MediaAssetRef) -> Result[str | None]:
    try:
        return Ok(await records.get_media_key(ref))
    except RecordNotFound as e:
        return Err(StepError(ErrorKind.NOT_FOUND, "fetch", str(e)))


async def fetch_source(storage: ObjectStoragePort, key: str, max_bytes: int) -> Result[bytes]:
    try:
        data = await asyncio.to_thread(storage.get_bytes, key)
    except ObjectNotFound:
        return Err(StepError(ErrorKind.SOURCE_NOT_FOUND, "fetch", f"no object at {key}"))
    except StorageError as e:
        return Err(StepError(ErrorKind.SOURCE_UNREADABLE, "fetch", str(e)))
    if not data:
        return Err(StepError(ErrorKind.UNREADABLE_IMAGE, "fetch", f"empty object at {key}"))
    if len(data) > max_bytes:
        return Err(StepError(ErrorKind.UNREADABLE_IMAGE, "fetch", f"{len(data)} bytes exceeds {max_bytes}"))
    return Ok(data)


async def decide_watermark(
    records: RecordStorePort,
    ref: MediaAssetRef,
    data: bytes,
    *,
    opacity: float,
    size_ratio: float,
    margin_ratio: float,
    default_attribution: str,
    mark_path: str | Path | None = None,
) -> Result[WatermarkDecision]:
    """Watermark (and attribute) submission images whose owner asked for it.

    Never fails the run: any error here falls back to the unmodified bytes.
    """
    if ref.role != MediaRole.SUBMISSION_IMAGE:
        return Ok(WatermarkDecision(data, watermarked=False))
    fmt, animated = await asyncio.to_thread(sniff, data)
    if fmt == "GIF" or animated:
        log.info("Skipping protection for %s input (animated=%s)", fmt, animated)
        return Ok(WatermarkDecision(data, watermarked=False))

    try:
        prefs = await records.get_protection_settings(ref.owner_id)
    except Exception:
        log.exception("Could not load protection settings for %s; continuing without watermark", ref.owner_id)
        return Ok(WatermarkDecision(data, watermarked=False))
    if prefs is None:
        return Ok(WatermarkDecision(data, watermarked=False))
    return Ok(await protect(
        data, prefs,
        opacity=opacity, size_ratio=size_ratio, margin_ratio=margin_ratio,
        default_attribution=default_attribution, mark_path=mark_path, owner_label=str(ref.owner_id),
    ))


async def protect(
    data: bytes,
    prefs: ProtectionSettings,
    *,
    opacity: float,
    size_ratio: float,
    margin_ratio: float,
    default_attribution: str,
    mark_path: str | Path | None = None,
    owner_label: str = "-",
) -> WatermarkDecision:
    """Apply the owner's watermark and attribution choices; errors leave the bytes as they were."""
    out, watermarked, attributed = data, False, False
    if prefs.enable_watermark:
        options = WatermarkOptions(
            position=coerce_position(prefs.watermark_position),
            opacity=opacity,
            size_ratio=size_ratio,
            margin_ratio=margin_ratio,
        )
        try:
            out = await asyncio.to_thread(apply_watermark, out, options, mark_path)
            watermarked = True
        except Exception:
            log.exception("Watermarking failed for owner=%s; storing unwatermarked", owner_label)
    if prefs.protect_from_ai:
        try:
            out = await asyncio.to_thread(embed_attribution, out, prefs.owner_name or default_attribution)
            attributed = True
        except Exception:
            log.exception("Attribution embedding failed for owner=%s; continuing", owner_label)
    return WatermarkDecision(out, watermarked=watermarked, attributed=attributed)


async def encode_step(data: bytes, *, max_long_edge: int, quality: int) -> Result[EncodedImage]:
    try:
        encoded = await asyncio.to_thread(encode_canonical, data, max_long_edge=max_long_edge, quality=quality)
    except UnreadableImage as e:
        return Err(StepError(ErrorKind.UNREADABLE_IMAGE, "encode", str(e)))
    except Exception as e:
        log.exception("Canonical encoding failed")
        return Err(StepError(ErrorKind.ENCODE_FAILED, "encode", str(e)))
    return Ok(encoded)


async def upload_new(storage: ObjectStoragePort, ref: MediaAssetRef, encoded: EncodedImage) -> Result[str]:
    key = new_object_key(kind_for_role(ref.role), ref.owner_id, encoded.extension)
    try:
        await asyncio.to_thread(storage.put_bytes, key, encoded.data, encoded.content_type)
    except StorageError as e:
        return Err(StepError(ErrorKind.UPLOAD_FAILED, "upload", str(e)))
    return Ok(key)


async def update_record(
    records: RecordStorePort,
    ref: MediaAssetRef,
    new_key: str,
    metadata: ProcessingMetadata,
    processed_at: datetime | None = None,
) -> Result[None]:
    patch = MediaAssetPatch(
        storage_key=new_key,
        processing_metadata=metadata,
        processed_at=processed_at or datetime.now(timezone.utc),
    )
    try:
        await records.update_media_asset(ref, patch)
    except Exception as e:
        return Err(StepError(ErrorKind.INCONSISTENCY, "update_record", f"{type(e).__name__}: {e}"))
    return Ok(None)


async def retire_old(storage: ObjectStoragePort, key: str) -> Result[None]:
    try:
        await asyncio.to_thread(storage.delete, key)
    except StorageError as e:
        return Err(StepError(ErrorKind.PARTIAL_FAILURE, "retire", f"{key} left in storage: {e}"))
    return Ok(None)
