from __future__ import annotations
import base64, time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MediaKind(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"

    @property
    def ext(self) -> str:
        return "jpg" if self is MediaKind.PHOTO else "mp4"

    @property
    def content_type(self) -> str:
        return "image/jpeg" if self is MediaKind.PHOTO else "video/mp4"


class Capture(BaseModel):
    path: Path
    kind: MediaKind
    duration_ms: Optional[int] = Field(default=None, gt=0)  # video only
    captured_at_ms: int = Field(default_factory=now_ms)


class Frame(BaseModel):
    path: Path
    ordinal: int = Field(..., ge=1)
    timestamp_ms: int = Field(..., ge=0)


class EncodedImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: str                       # base64, no data-URI prefix
    media_type: str = "image/jpeg"
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    path: Optional[Path] = None     # transient encoded file, if written

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.data)


class Commentary(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    source: str = "OpenAI"
    created_at_ms: int = Field(default_factory=now_ms)


class Memory(BaseModel):
    """Row of the `memories` table."""

    id: str
    user_id: str
    commentary: str
    image_uri: Optional[str] = None
    video_uri: Optional[str] = None
    source: str = "OpenAI"
    created_at: Optional[datetime] = None

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _as_str(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @model_validator(mode="after")
    def _one_media_reference(self) -> "Memory":
        if self.image_uri and self.video_uri:
            raise ValueError("memory may reference an image or a video, not both")
        return self

    @property
    def media_kind(self) -> Optional[MediaKind]:
        if self.image_uri:
            return MediaKind.PHOTO
        if self.video_uri:
            return MediaKind.VIDEO
        return None


class StageEvent(BaseModel):
    event: str = "pipeline.stage"
    run_id: str
    user_id: str
    stage: str
    ts: str = Field(default_factory=utc_iso)   # ISO8601 UTC
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    memory_id: Optional[str] = None
