from __future__ import annotations

import base64
import binascii
import time
import uuid
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

PLACEHOLDER_STYLE = "Designing..."
ARTIFACTS_PER_SESSION = 3


class ArtifactStatus(str, Enum):
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


FINAL_STATUSES = frozenset({ArtifactStatus.COMPLETE, ArtifactStatus.ERROR})


class Artifact(BaseModel):
    """One generated design candidate. Instances are never mutated; the store swaps copies."""

    model_config = ConfigDict(frozen=True)

    id: str
    style_name: str = PLACEHOLDER_STYLE
    html: str = ""
    status: ArtifactStatus = ArtifactStatus.STREAMING

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    prompt: str
    timestamp: int = Field(description="Creation time, epoch milliseconds")
    artifacts: Tuple[Artifact, ...]

    @property
    def is_final(self) -> bool:
        return all(a.is_final for a in self.artifacts)

    def artifact(self, artifact_id: str) -> Optional[Artifact]:
        for art in self.artifacts:
            if art.id == artifact_id:
                return art
        return None


class ComponentVariation(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    html: str


class InspirationImage(BaseModel):
    """Pre-encoded inspiration image as sent by the client (already downscaled)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    data: str = Field(..., description="Base64 payload without a data: URL prefix")
    mime_type: str = Field("image/jpeg", alias="mimeType")

    @field_validator("mime_type")
    @classmethod
    def _image_mime(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not v.startswith("image/"):
            raise ValueError("mimeType must be an image/* type")
        return v

    @field_validator("data")
    @classmethod
    def _base64_payload(cls, v: str) -> str:
        v = (v or "").strip()
        if v.startswith("data:") and "," in v:
            v = v.split(",", 1)[1]
        if not v:
            raise ValueError("image data is empty")
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("image data is not valid base64")
        return v


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


def artifact_id_for(session_id: str, index: int) -> str:
    return f"{session_id}_{index}"


def placeholder_session(prompt: str, session_id: Optional[str] = None, now_ms: Optional[int] = None) -> Session:
    sid = session_id or new_session_id()
    return Session(
        id=sid,
        prompt=prompt,
        timestamp=int(now_ms if now_ms is not None else time.time() * 1000),
        artifacts=tuple(Artifact(id=artifact_id_for(sid, i)) for i in range(ARTIFACTS_PER_SESSION)),
    )
