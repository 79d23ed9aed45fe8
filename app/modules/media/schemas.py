import uuid
from pydantic import BaseModel, ConfigDict, Field

from app.modules.media.keys import MediaRole, UploadKind

class PresignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_type: str = Field(alias="fileType")
    file_size: int = Field(alias="fileSize")
    type: str = "submission"
    submission_id: uuid.UUID | None = Field(default=None, alias="submissionId")

class PresignOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    presigned_url: str = Field(serialization_alias="presignedUrl")
    public_url: str = Field(serialization_alias="publicUrl")
    key: str
    expires_in: int = Field(serialization_alias="expiresIn")

class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    public_url: str = Field(alias="publicUrl")
    type: MediaRole = MediaRole.SUBMISSION_IMAGE
    submission_id: uuid.UUID | None = Field(default=None, alias="submissionId")

class ProcessAccepted(BaseModel):
    job_id: uuid.UUID = Field(serialization_alias="jobId")
    status: str

class UploadOut(BaseModel):
    public_url: str = Field(serialization_alias="publicUrl")
    watermarked: bool = False
    format: str | None = None

class PurgeOut(BaseModel):
    deleted: int
    keys: list[str] = []

# upload kinds accepted by the multipart endpoint
UPLOAD_KINDS = tuple(k.value for k in UploadKind)
