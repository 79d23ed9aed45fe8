import uuid
from fastapi import APIRouter, UploadFile, File, Form, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.config import settings
from app.core.db import SessionLocal
from app.core.security import get_principal, require_scopes, Principal
from app.modules.imaging.image_io import ACCEPTED_CONTENT_TYPES, UnreadableImage
from app.modules.ingestion.jobs import IngestionJobService
from app.modules.media.keys import SUBMISSION_SCOPED, MediaRole, UploadKind, key_from_public_url, kind_for_role, owned_by
from app.modules.media.presign import UploadAuthorizationError, UploadAuthorizationIssuer
from app.modules.media.schemas import (
    PresignRequest, PresignOut, ProcessRequest, ProcessAccepted, UploadOut, PurgeOut, UPLOAD_KINDS,
)
from app.modules.media.service import MediaService
from app.platform.ports.object_storage import ObjectNotFound, StorageError
from app.platform.provider_registry import registry

router = APIRouter()

async def get_session():
    async with SessionLocal() as session:
        yield session

def svc(session: AsyncSession = Depends(get_session)) -> MediaService:
    return MediaService(session)

def get_issuer() -> UploadAuthorizationIssuer:
    return UploadAuthorizationIssuer(storage_factory=registry.object_storage, record_store=registry.record_store())

def jobs(session: AsyncSession = Depends(get_session)) -> IngestionJobService:
    return IngestionJobService(session)

async def _read_upload(file: UploadFile) -> bytes:
    if file.content_type not in ACCEPTED_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid file type: {file.content_type}")
    if file.size is not None and file.size > settings.MAX_INGEST_BYTES:
        raise HTTPException(status_code=413, detail="File too large")
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(data) > settings.MAX_INGEST_BYTES:
        raise HTTPException(status_code=413, detail="File too large")
    return data

# ---- Direct-to-storage uploads ----

@router.post("/upload/presign", response_model=PresignOut, dependencies=[Depends(require_scopes("media:write"))])
async def presign_upload(
    payload: PresignRequest,
    principal: Principal = Depends(get_principal),
    issuer: UploadAuthorizationIssuer = Depends(get_issuer),
):
    try:
        auth = await issuer.issue(
            principal.user_id, payload.type, payload.file_type, payload.file_size, submission_id=payload.submission_id,
        )
    except UploadAuthorizationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}")
    return PresignOut(presigned_url=auth.upload_url, public_url=auth.public_url, key=auth.key, expires_in=auth.expires_in)

@router.post("/upload/process", response_model=ProcessAccepted, status_code=status.HTTP_202_ACCEPTED,
             dependencies=[Depends(require_scopes("media:write"))])
async def process_upload(
    payload: ProcessRequest,
    principal: Principal = Depends(get_principal),
    queue: IngestionJobService = Depends(jobs),
):
    source_key = key_from_public_url(payload.public_url)
    if source_key is None:
        raise HTTPException(status_code=400, detail="publicUrl is not a media URL")
    if payload.type == MediaRole.SUBMISSION_IMAGE and payload.submission_id is None:
        raise HTTPException(status_code=400, detail="submissionId is required for submission images")
    if not owned_by(source_key, kind_for_role(payload.type), principal.user_id):
        raise HTTPException(status_code=403, detail="publicUrl does not belong to the caller")
    job = await queue.enqueue(
        public_url=payload.public_url, role=payload.type, owner_id=principal.user_id, submission_id=payload.submission_id,
    )
    if job is None:
        raise HTTPException(status_code=404, detail="Submission not found" if payload.submission_id else "User not found")
    return ProcessAccepted(job_id=job.id, status=job.status)

# ---- Synchronous upload ----

@router.post("/upload", response_model=UploadOut, dependencies=[Depends(require_scopes("media:write"))])
async def upload_media(
    file: UploadFile = File(...),
    type: str = Form("submission"),
    submission_id: uuid.UUID | None = Form(None, alias="submissionId"),
    principal: Principal = Depends(get_principal),
    service: MediaService = Depends(svc),
):
    if type not in UPLOAD_KINDS:
        raise HTTPException(status_code=400, detail=f"Invalid upload type: {type}")
    kind = UploadKind(type)
    scope_id = None
    if kind in SUBMISSION_SCOPED:
        if submission_id is None:
            raise HTTPException(status_code=400, detail=f"submissionId is required for {kind.value} uploads")
        if not await service.owns_submission(principal.user_id, submission_id):
            raise HTTPException(status_code=404, detail="Submission not found")
        scope_id = submission_id
    data = await _read_upload(file)
    try:
        url, metadata = await service.upload(principal.user_id, kind, data, scope_id=scope_id)
    except UnreadableImage as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=502, detail=f"Storage error: {e}")
    return UploadOut(public_url=url, watermarked=metadata.watermarked, format=metadata.format)

# ---- Owner-initiated replacement ----

@router.post("/submissions/{submission_id}/image", response_model=UploadOut, dependencies=[Depends(require_scopes("media:write"))])
async def replace_submission_image(
    submission_id: uuid.UUID,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_principal),
    service: MediaService = Depends(svc),
):
    data = await _read_upload(file)
    try:
        replaced = await service.replace_submission_image(principal.user_id, submission_id, data)
    except UnreadableImage as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=502, detail=f"Storage error: {e}")
    if replaced is None:
        raise HTTPException(status_code=404, detail="Submission not found")
    url, metadata = replaced
    return UploadOut(public_url=url, watermarked=metadata.watermarked, format=metadata.format)

@router.post("/profile/image", response_model=UploadOut, dependencies=[Depends(require_scopes("media:write"))])
async def replace_profile_image(
    file: UploadFile = File(...),
    principal: Principal = Depends(get_principal),
    service: MediaService = Depends(svc),
):
    data = await _read_upload(file)
    try:
        replaced = await service.replace_profile_image(principal.user_id, data)
    except UnreadableImage as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=502, detail=f"Storage error: {e}")
    if replaced is None:
        raise HTTPException(status_code=404, detail="User not found")
    url, metadata = replaced
    return UploadOut(public_url=url, watermarked=metadata.watermarked, format=metadata.format)

# ---- Deletion ----

@router.delete("/submissions/{submission_id}", response_model=PurgeOut, dependencies=[Depends(require_scopes("media:write"))])
async def delete_submission(
    submission_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: MediaService = Depends(svc),
):
    deleted = await service.delete_submission(principal.user_id, submission_id)
    if deleted is None:
        raise HTTPException(status_code=404, detail="Submission not found")
    return PurgeOut(deleted=len(deleted), keys=deleted)

@router.delete("/account", response_model=PurgeOut, dependencies=[Depends(require_scopes("media:write"))])
async def delete_account(
    principal: Principal = Depends(get_principal),
    service: MediaService = Depends(svc),
):
    deleted = await service.delete_account(principal.user_id)
    if deleted is None:
        raise HTTPException(status_code=404, detail="User not found")
    return PurgeOut(deleted=len(deleted), keys=deleted)

# ---- Preview ----

@router.get("/submissions/{submission_id}/preview")
async def submission_preview(
    submission_id: uuid.UUID,
    width: int = Query(400, ge=1, le=4096),
    height: int = Query(400, ge=1, le=4096),
    service: MediaService = Depends(svc),
):
    try:
        png = await service.preview(submission_id, width, height)
    except ObjectNotFound:
        png = None
    except UnreadableImage as e:
        raise HTTPException(status_code=422, detail=str(e))
    if png is None:
        raise HTTPException(status_code=404, detail="Submission image not found")
    return Response(content=png, media_type="image/png")
