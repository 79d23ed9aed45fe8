import uuid
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import TIMESTAMP, Integer, String, Text, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.base import Base, TimestampedMixin
from app.core.config import settings
from app.core.db import SessionLocal
from app.modules.ingestion.orchestrator import IngestionOrchestrator, IngestionRequest, default_orchestrator
from app.modules.ingestion.result import ErrorKind, IngestionResult
from app.modules.media.keys import MediaRole, key_from_public_url
from app.platform.ports.record_store import MediaAssetRef, RecordNotFound, RecordStorePort

log = logging.getLogger("ingest.jobs")

# failures a retry cannot fix
_PERMANENT = {ErrorKind.UNREADABLE_IMAGE, ErrorKind.NOT_FOUND, ErrorKind.FORBIDDEN, ErrorKind.INCONSISTENCY}

class IngestionJob(Base, TimestampedMixin):
    public_url: Mapped[str] = mapped_column(String(1024))
    role: Mapped[str] = mapped_column(String(16))  # submission | profile
    owner_id: Mapped[uuid.UUID] = mapped_column(index=True)
    submission_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    replaces_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending | processing | done | failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))
    claimed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_request(self) -> IngestionRequest:
        return IngestionRequest(
            public_url=self.public_url,
            role=MediaRole(self.role),
            owner_id=self.owner_id,
            submission_id=self.submission_id,
            replaces_key=self.replaces_key,
        )

def retry_backoff_seconds(attempts: int) -> int:
    return min(300, 2 ** min(attempts, 9))  # 2,4,8,...,256,300s

class IngestionJobRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, *, public_url: str, role: MediaRole, owner_id: uuid.UUID, submission_id: uuid.UUID | None, replaces_key: str | None = None) -> IngestionJob:
        obj = IngestionJob(
            public_url=public_url,
            role=role.value,
            owner_id=owner_id,
            submission_id=submission_id,
            replaces_key=replaces_key,
            status="pending",
            attempts=0,
            next_attempt_at=datetime.now(timezone.utc),
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, job_id: uuid.UUID) -> IngestionJob | None:
        res = await self.session.execute(select(IngestionJob).where(IngestionJob.id == job_id))
        return res.scalar_one_or_none()

    async def claim_batch(self, limit: int = 10, stale_after: timedelta | None = None) -> list[IngestionJob]:
        now = datetime.now(timezone.utc)
        stale_after = stale_after or timedelta(seconds=settings.INGEST_RUN_TIMEOUT_SECONDS * 2)
        due = (IngestionJob.status == "pending") & (IngestionJob.next_attempt_at <= now)
        # a worker that died mid-run leaves its job "processing"; reclaim it once stale
        abandoned = (IngestionJob.status == "processing") & (IngestionJob.claimed_at <= now - stale_after)
        stmt = select(IngestionJob).where(due | abandoned).order_by(IngestionJob.created_at).limit(limit)
        claimed = (await self.session.scalars(stmt.with_for_update(skip_locked=True))).all()
        for job in claimed:
            job.status, job.claimed_at = "processing", now
        await self.session.flush()
        return list(claimed)

    async def mark_done(self, job: IngestionJob, note: str | None = None):
        # note keeps non-fatal warnings (orphaned objects) for reconciliation
        job.status, job.last_error = "done", note[:2000] if note else None
        await self.session.flush()

    async def mark_failed(self, job: IngestionJob, error: str, *, permanent: bool = False):
        job.attempts = (job.attempts or 0) + 1
        job.last_error = error[:2000]
        if permanent or job.attempts >= settings.INGEST_MAX_ATTEMPTS:
            job.status = "failed"
        else:
            job.status = "pending"
            job.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=retry_backoff_seconds(job.attempts))
        await self.session.flush()

class IngestionJobService:
    def __init__(
        self,
        session: AsyncSession,
        *,
        repo: IngestionJobRepository | None = None,
        records: RecordStorePort | None = None,
        public_base_url: str | None = None,
    ):
        self.session = session
        self.public_base_url = public_base_url or settings.PUBLIC_BASE_URL
        self.repo = repo or IngestionJobRepository(session)
        self._records = records

    @property
    def records(self) -> RecordStorePort:
        if self._records is None:
            from app.platform.provider_registry import registry
            self._records = registry.record_store()
        return self._records

    async def enqueue(self, *, public_url: str, role: MediaRole, owner_id: uuid.UUID, submission_id: uuid.UUID | None = None) -> IngestionJob | None:
        """Queue a run for an uploaded object. Returns None when the owner has no such record.

        If the record still points at another live object, the job remembers it so the
        run can replace it instead of mistaking it for an earlier run's output.
        """
        try:
            current = await self.records.get_media_key(MediaAssetRef(owner_id, role, submission_id))
        except RecordNotFound:
            return None
        source_key = key_from_public_url(public_url, self.public_base_url)
        replaces_key = current if current and current != source_key else None
        job = await self.repo.enqueue(
            public_url=public_url, role=role, owner_id=owner_id, submission_id=submission_id, replaces_key=replaces_key,
        )
        await self.session.commit()
        log.info("Queued %s ingestion job %s for %s (replaces=%s)", role.value, job.id, public_url, replaces_key or "-")
        return job

async def _settle(repo: IngestionJobRepository, job: IngestionJob, result: IngestionResult):
    if result.success:
        note = "; ".join(result.as_dict().get("warnings", [])) or None
        await repo.mark_done(job, note)
        if note:
            log.warning("Job %s done with leftovers: %s", job.id, note)
        return
    err = result.error
    permanent = err is not None and err.kind in _PERMANENT
    await repo.mark_failed(job, str(err), permanent=permanent)
    level = logging.ERROR if permanent else logging.WARNING
    log.log(level, "Job %s attempt %d failed: %s", job.id, job.attempts, err)

# ---- Background worker ----

async def process_batch(repo: IngestionJobRepository, orchestrator: IngestionOrchestrator, commit, limit: int = 10) -> int:
    """Claim and run up to ``limit`` jobs, committing after the claim and after each run."""
    batch = await repo.claim_batch(limit=limit)
    await commit()
    # runs are sequential; the run guard still covers multiple workers
    for job in batch:
        deadline = time.monotonic() + settings.INGEST_RUN_TIMEOUT_SECONDS
        result = await orchestrator.run(job.to_request(), deadline=deadline)
        await _settle(repo, job, result)
        await commit()
    return len(batch)

async def run_ingestion_worker(
    orchestrator: IngestionOrchestrator | None = None,
    poll_interval_seconds: float | None = None,
):
    orchestrator = orchestrator or default_orchestrator()
    poll = poll_interval_seconds or settings.INGEST_POLL_INTERVAL_SECONDS
    log.info("Ingestion worker polling every %.1fs (timeout=%ss, max_attempts=%d)",
             poll, settings.INGEST_RUN_TIMEOUT_SECONDS, settings.INGEST_MAX_ATTEMPTS)
    while True:
        try:
            async with SessionLocal() as session:
                try:
                    claimed = await process_batch(IngestionJobRepository(session), orchestrator, session.commit)
                except Exception:
                    await session.rollback()
                    raise
        except asyncio.CancelledError:
            log.info("Ingestion worker stopped")
            raise
        except Exception:
            log.exception("Ingestion worker pass failed")
            claimed = 0
        if not claimed:
            await asyncio.sleep(poll)
