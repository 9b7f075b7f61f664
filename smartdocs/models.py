# models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .exceptions import ErrorKind
from .storage.dto import ObjectRecord


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EngineState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    ERROR = "error"


class UploadStatus(str, Enum):
    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    UPLOAD_FAILED = "upload_failed"


class ErrorInfo(BaseModel):
    """Describes the most recent failed operation."""

    model_config = ConfigDict(frozen=True)

    operation: Literal["refresh", "upload"]
    kind: ErrorKind
    message: str
    occurred_at: datetime


class UploadAttempt(BaseModel):
    """A file currently being written. Lives only while its upload call is in flight."""

    model_config = ConfigDict(frozen=True)

    key: str
    filename: str
    size_bytes: int
    content_type: str
    started_at: datetime


class UploadResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: UploadStatus
    filename: str
    key: Optional[str] = None
    reason: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.status == UploadStatus.SUCCESS


class ViewSnapshot(BaseModel):
    """
    The engine's externally visible state at one instant.

    `records` is always sorted by last_modified, most recent first, and is
    replaced wholesale by every successful listing.
    """

    model_config = ConfigDict(frozen=True)

    records: Tuple[ObjectRecord, ...] = ()
    is_refreshing: bool = False
    last_error: Optional[ErrorInfo] = None
    uploads: Tuple[UploadAttempt, ...] = ()
    refreshed_at: Optional[datetime] = None

    @property
    def pending_count(self) -> int:
        return len(self.records)

    def keys(self) -> list[str]:
        return [record.key for record in self.records]
