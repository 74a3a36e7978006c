"""
Request Schemas
===============

Pydantic bodies accepted by the control surface. Validation failures are
answered by FastAPI with 422 before a handler runs.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from printstreamer.audio.library import RepeatMode


class ToggleRequest(BaseModel):
    """Body for every on/off switch."""

    enabled: bool = Field(..., description="New value of the switch")


class PrivacyRequest(BaseModel):
    privacy: str = Field(..., description="public, unlisted or private")


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=200, description="Chat text")


class LiveStartRequest(BaseModel):
    job_name: Optional[str] = Field(default=None, description="Used in the broadcast title")


class FolderRequest(BaseModel):
    folder: str = Field(..., min_length=1, description="Audio folder path")


class QueueRequest(BaseModel):
    names: List[str] = Field(default_factory=list, description="Track names to enqueue")
    remove: Optional[str] = Field(default=None, description="Track name to drop from the queue")


class QueueRemoveRequest(BaseModel):
    names: List[str] = Field(..., min_length=1, description="Track names to drop from the queue")


class RepeatRequest(BaseModel):
    mode: RepeatMode = Field(..., description="none, one or all")


class PlayTrackRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Track name or file name")


class TimelapseStartRequest(BaseModel):
    filename: Optional[str] = Field(default=None, description="Print filename hint for resume")
