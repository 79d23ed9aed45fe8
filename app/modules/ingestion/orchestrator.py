"""Ingestion workflow orchestrator.

One run takes a provisional upload to its final, canonical object:

    fetch -> decide watermark -> encode -> upload new -> update record -> retire old

Nothing is written before "upload new", and the source object is only deleted
after the record points at the new key, so a failure at any point leaves the
asset usable: either still at its old key, or already at its new one. The
worst case is an unreferenced object, which is logged for reconciliation.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from app.core.config import settings
from app.modules.ingestion import steps
from app.modules.ingestion.result import Err, ErrorKind, IngestionResult, IngestionState, StepError
from app.modules.media.keys import MediaRole, key_from_public_url, kind_for_role, owned_by, public_url_for
from app.platform.ports.object_storage import ObjectStoragePort
from app.platform.ports.record_store import MediaAssetRef, ProcessingMetadata, RecordStorePort
from app.platform.ports.run_guard import RunGuardPort

log = logging.getLogger("media.ingest")


@dataclass(frozen=True)
class IngestionRequest:
    public_url: str
    role: MediaRole
    owner_id: uuid.UUID
    submission_id: uuid.UUID | None = None
    # live key the upload is replacing, when the record still held one at enqueue time
    replaces_key: str | None = None

    @property
    def ref(self) -> MediaAssetRef:
        return MediaAssetRef(self.owner_id, self.role, self.submission_id)


class IngestionOrchestrator:
    def __init__(
        self,
        *,
        storage_factory: Callable[[], ObjectStoragePort],
        record_store: RecordStorePort,
        run_guard: RunGuardPort | None = None,
        public_base_url: str | None = None,
        mark_path: str | Path | None = None,
    ):
        self.storage_factory = storage_factory
        self.records = record_store
        self.run_guard = run_guard
        self.public_base_url = public_base_url or settings.PUBLIC_BASE_URL
        self.mark_path = mark_path or settings.WATERMARK_MARK_PATH

    async def run(self, request: IngestionRequest, deadline: float | None = None) -> IngestionResult:
        """Process one uploaded object. Never raises.

        ``deadline`` is a ``time.monotonic()`` value; it is only checked between
        steps and only before anything has been written.
        """
        source_key = key_from_public_url(request.public_url, self.public_base_url)
        if source_key is None:
            return self._failed(IngestionState.PENDING, StepError(
                ErrorKind.SOURCE_NOT_FOUND, "fetch", f"not a URL under the public base: {request.public_url}",
            ))
        if not owned_by(source_key, kind_for_role(request.role), request.owner_id):
            return self._failed(IngestionState.PENDING, StepError(
                ErrorKind.FORBIDDEN, "fetch", f"{source_key} is not in the namespace of owner {request.owner_id}",
            ))

        if self.run_guard is not None and not await self.run_guard.acquire(source_key):
            return self._failed(IngestionState.PENDING, StepError(
                ErrorKind.ALREADY_RUNNING, "fetch", f"another run holds {source_key}",
            ))
        try:
            return await self._run(request, source_key, deadline)
        except Exception as e:
            log.exception("Ingestion run crashed for %s", source_key)
            return self._failed(IngestionState.FAILED, StepError(ErrorKind.INTERNAL, "run", f"{type(e).__name__}: {e}"))
        finally:
            if self.run_guard is not None:
                await self.run_guard.release(source_key)

    async def _run(self, request: IngestionRequest, source_key: str, deadline: float | None) -> IngestionResult:
        ref = request.ref
        state = IngestionState.PENDING

        current = await steps.read_current_key(self.records, ref)
        if isinstance(current, Err):
            return self._failed(state, current.error)
        if self._already_rotated(current.value, source_key, request.replaces_key):
            return self._skipped(current.value, source_key)

        try:
            storage = self.storage_factory()
        except RuntimeError as e:
            return self._failed(state, StepError(ErrorKind.CONFIGURATION, "fetch", str(e)))

        if (expired := self._deadline_error("fetch", deadline)) is not None:
            return self._failed(state, expired)
        fetched = await steps.fetch_source(storage, source_key, settings.MAX_INGEST_BYTES)
        if isinstance(fetched, Err):
            if fetched.error.kind == ErrorKind.SOURCE_NOT_FOUND:
                # a previous attempt may have finished and retired the source already
                again = await steps.read_current_key(self.records, ref)
                if not isinstance(again, Err) and self._already_rotated(again.value, source_key, request.replaces_key):
                    return self._skipped(again.value, source_key)
            return self._failed(state, fetched.error)
        state = IngestionState.FETCHED

        if (expired := self._deadline_error("watermark", deadline)) is not None:
            return self._failed(state, expired)
        decision = await steps.decide_watermark(
            self.records, ref, fetched.value,
            opacity=settings.WATERMARK_OPACITY,
            size_ratio=settings.WATERMARK_SIZE_RATIO,
            margin_ratio=settings.WATERMARK_MARGIN_RATIO,
            default_attribution=settings.DEFAULT_ATTRIBUTION,
            mark_path=self.mark_path,
        )
        if isinstance(decision, Err):
            return self._failed(state, decision.error)
        state = IngestionState.WATERMARK_DECIDED

        if (expired := self._deadline_error("encode", deadline)) is not None:
            return self._failed(state, expired)
        encoded = await steps.encode_step(
            decision.value.data,
            max_long_edge=settings.CANONICAL_MAX_LONG_EDGE,
            quality=settings.CANONICAL_QUALITY,
        )
        if isinstance(encoded, Err):
            return self._failed(state, encoded.error)
        state = IngestionState.ENCODED

        if (expired := self._deadline_error("upload", deadline)) is not None:
            return self._failed(state, expired)
        uploaded = await steps.upload_new(storage, ref, encoded.value)
        if isinstance(uploaded, Err):
            return self._failed(state, uploaded.error)
        new_key = uploaded.value
        state = IngestionState.UPLOADED_NEW

        metadata = ProcessingMetadata(
            watermarked=decision.value.watermarked,
            compressed=True,
            format=encoded.value.format,
        )
        committed = await steps.update_record(self.records, ref, new_key, metadata)
        if isinstance(committed, Err):
            log.error(
                "INCONSISTENCY: %s stored at %s but record %s/%s/%s still points at %s (%s); reconcile manually",
                ref.role.value, new_key, ref.owner_id, ref.role.value, ref.submission_id, source_key, committed.error.message,
            )
            return self._failed(state, committed.error, storage_key=new_key)
        state = IngestionState.RECORD_UPDATED

        result = IngestionResult(
            success=True,
            state=state,
            storage_key=new_key,
            public_url=public_url_for(new_key, self.public_base_url),
            metadata=metadata,
        )
        stale = [source_key]
        if request.replaces_key and request.replaces_key not in (source_key, new_key):
            stale.append(request.replaces_key)
        for old_key in stale:
            retired = await steps.retire_old(storage, old_key)
            if isinstance(retired, Err):
                log.warning("Orphaned %s after processing: %s", old_key, retired.error.message)
                result.warnings.append(retired.error)
        if not result.warnings:
            result.state = IngestionState.OLD_RETIRED

        log.info(
            "Processed %s %s -> %s (watermarked=%s format=%s)",
            ref.role.value, source_key, new_key, metadata.watermarked, metadata.format,
        )
        return result

    @staticmethod
    def _already_rotated(current_key: str | None, source_key: str, replaces_key: str | None = None) -> bool:
        return current_key is not None and current_key not in (source_key, replaces_key)

    def _skipped(self, current_key: str, source_key: str) -> IngestionResult:
        log.info("Record no longer references %s (now %s); nothing to do", source_key, current_key)
        return IngestionResult(
            success=True,
            state=IngestionState.OLD_RETIRED,
            skipped=True,
            storage_key=current_key,
            public_url=public_url_for(current_key, self.public_base_url),
        )

    @staticmethod
    def _deadline_error(step: str, deadline: float | None) -> StepError | None:
        if deadline is not None and time.monotonic() >= deadline:
            return StepError(ErrorKind.DEADLINE_EXCEEDED, step, "run deadline passed before step started")
        return None

    @staticmethod
    def _failed(state: IngestionState, error: StepError, storage_key: str | None = None) -> IngestionResult:
        if error.kind != ErrorKind.INCONSISTENCY:
            log.warning("Ingestion failed after %s: %s", state.value, error)
        return IngestionResult(success=False, state=IngestionState.FAILED, error=error, storage_key=storage_key)


def default_orchestrator() -> IngestionOrchestrator:
    from app.platform.provider_registry import registry
    return IngestionOrchestrator(
        storage_factory=registry.object_storage,
        record_store=registry.record_store(),
        run_guard=registry.run_guard(),
    )
