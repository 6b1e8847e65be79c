from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RecordingState(str, Enum):
    IDLE = "idle"
    REQUESTING_PERMISSION = "requesting-permission"
    RECORDING = "recording"
    PAUSED = "paused"
    FINALIZING = "finalizing"


class AudioArtifact(BaseModel):
    """Finalized audio produced once per completed recording.

    Instances are frozen; a new recording produces a new artifact and the old
    one is simply dropped.
    """

    model_config = ConfigDict(frozen=True)

    payload: bytes
    content_type: str
    duration_seconds: int = Field(ge=0)
    created_at: datetime

    @property
    def size_bytes(self) -> int:
        return len(self.payload)
