"""
Pydantic models for API request/response validation.

Shared by the HTTP routes, the realtime channel and the store, which hands
out these detached models instead of ORM rows.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Serialized in camelCase, accepts either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class Location(CamelModel):
    """GPS fix attached to a camera frame."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class BoundingBox(CamelModel):
    """Map viewport. ``west > east`` means the box crosses the antimeridian."""
    north: float = Field(..., ge=-90, le=90)
    south: float = Field(..., ge=-90, le=90)
    east: float = Field(..., ge=-180, le=180)
    west: float = Field(..., ge=-180, le=180)

    @model_validator(mode="after")
    def _check_order(self) -> "BoundingBox":
        if self.south > self.north:
            raise ValueError("south must not be greater than north")
        return self


class Prediction(BaseModel):
    """
    Bounding box returned by the hosted model.
    Coordinates are in pixels of the preprocessed image.
    """
    model_config = ConfigDict(populate_by_name=True)

    class_name: str = Field(..., alias="class")
    confidence: float = Field(..., ge=0, le=1)
    x: float = 0.0       # Center X
    y: float = 0.0       # Center Y
    width: float = 0.0
    height: float = 0.0


class PotholeRecord(CamelModel):
    """A geographic cluster of one or more detections of the same pothole."""
    id: str
    latitude: float
    longitude: float
    confidence_score: float
    images: List[str] = Field(default_factory=list)
    detection_count: int = 1
    verified: bool = False
    detected_at: datetime
    created_at: datetime
    updated_at: datetime
    reporter_id: str | None = None


class PotholeCreate(CamelModel):
    """Manual record creation from the query API."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    confidence_score: float = Field(0.5, ge=0, le=1)
    images: List[str] = Field(default_factory=list)
    verified: bool = False
    detection_count: int = Field(1, ge=1)
    reporter_id: str | None = None


class VoteStatus(str, Enum):
    STILL_THERE = "still_there"
    NOT_THERE = "not_there"


class ConfirmationVote(CamelModel):
    id: str
    pothole_id: str
    user_id: str
    status: VoteStatus
    confirmed_at: datetime


class VoteSummary(BaseModel):
    still_there: int = 0
    not_there: int = 0
    total: int = 0


class DetectionSessionRecord(CamelModel):
    id: str
    user_id: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    is_active: bool
    total_detections: int = 0
