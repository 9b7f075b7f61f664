# storage/dto.py
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional


class ObjectRecord(BaseModel):
    """
    A standardized Data Transfer Object for one object currently present in a
    storage container, abstracting away provider-specific representations.
    Records are immutable: a changed object is a new record with the same key.
    """

    model_config = ConfigDict(frozen=True)

    key: str = Field(min_length=1)
    last_modified: datetime
    size_bytes: int = Field(ge=0)
    access_url: str
    content_type: Optional[str] = None

    @field_validator("last_modified")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # Some providers report naive UTC timestamps; keep every record comparable.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
