"""
Pydantic schemas for the diagnostics surface.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, validator


class ErrorModel(BaseModel):
    kind: str
    message: str
    fatal: bool = False


class FrameSizeModel(BaseModel):
    width: int
    height: int

    @validator("width", "height", pre=True)
    def _non_negative(cls, value: int) -> int:
        return max(0, int(value))


class StatusModel(BaseModel):
    state: str
    channel_state: str = Field(alias="channelState")
    connection_state: str = Field(alias="connectionState")
    ice_connection_state: str = Field(alias="iceConnectionState")
    has_remote_description: bool = Field(default=False, alias="hasRemoteDescription")
    pending_candidates: int = Field(default=0, alias="pendingCandidates")
    video_receiving: bool = Field(default=False, alias="videoReceiving")
    frame_size: Optional[FrameSizeModel] = Field(default=None, alias="frameSize")
    target_size: Optional[FrameSizeModel] = Field(default=None, alias="targetSize")
    errors: List[ErrorModel] = Field(default_factory=list)
    offers_created: int = Field(default=0, alias="offersCreated")
    candidates_applied: int = Field(default=0, alias="candidatesApplied")
    candidates_sent: int = Field(default=0, alias="candidatesSent")
    model_config = ConfigDict(populate_by_name=True)


class HealthModel(BaseModel):
    status: str = "ok"
    state: str
