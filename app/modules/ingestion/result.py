"""Typed step results for the ingestion pipeline.

Each step returns ``Ok(value)`` or ``Err(StepError)`` instead of raising, so the
orchestrator decides explicitly which failures abort a run and which are only
logged.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar, Union

from app.platform.ports.record_store import ProcessingMetadata

T = TypeVar("T")


class ErrorKind(str, Enum):
    UNREADABLE_IMAGE = "unreadable_image"
    SOURCE_NOT_FOUND = "source_not_found"
    SOURCE_UNREADABLE = "source_unreadable"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    ENCODE_FAILED = "encode_failed"
    UPLOAD_FAILED = "upload_failed"
    PARTIAL_FAILURE = "partial_failure"  # old object survived retirement; harmless
    INCONSISTENCY = "inconsistency"  # new object stored but record not updated
    ALREADY_RUNNING = "already_running"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class IngestionState(str, Enum):
    PENDING = "pending"
    FETCHED = "fetched"
    WATERMARK_DECIDED = "watermark_decided"
    ENCODED = "encoded"
    UPLOADED_NEW = "uploaded_new"
    RECORD_UPDATED = "record_updated"
    OLD_RETIRED = "old_retired"
    FAILED = "failed"


@dataclass(frozen=True)
class StepError:
    kind: ErrorKind
    step: str
    message: str

    def __str__(self) -> str:
        return f"{self.step}: {self.kind.value}: {self.message}"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: StepError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


@dataclass
class IngestionResult:
    success: bool
    state: IngestionState
    error: StepError | None = None
    skipped: bool = False
    storage_key: str | None = None
    public_url: str | None = None
    metadata: ProcessingMetadata | None = None
    warnings: list[StepError] = field(default_factory=list)

    def as_dict(self) -> dict:
        out = {"success": self.success}
        if self.skipped:
            out["skipped"] = True
        if self.error is not None:
            out["error"] = str(self.error)
        if self.warnings:
            out["warnings"] = [str(w) for w in self.warnings]
        return out
