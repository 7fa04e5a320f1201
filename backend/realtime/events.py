"""
Wire schemas for the detection WebSocket.

Every message is a JSON object tagged by ``type``. Client messages are
validated into one of the event models below before the session manager
sees them; server messages are built here and dumped in camelCase.
"""
from __future__ import annotations

import base64
import binascii
import json
from typing import Annotated, Any, List, Literal, Union

from pydantic import Field, TypeAdapter, ValidationError, field_validator

from schemas import BoundingBox, CamelModel, Location, PotholeRecord

_DATA_URL_MARKER = ";base64,"


class EventValidationError(ValueError):
    """Raised when a client message is not a well-formed event."""


# ---------- Client -> server ----------


class StartEvent(CamelModel):
    type: Literal["start"]
    user_id: str | None = None


class FrameEvent(CamelModel):
    type: Literal["frame"]
    frame: bytes
    location: Location

    @field_validator("frame", mode="before")
    @classmethod
    def _decode_frame(cls, value: Any) -> bytes:
        if isinstance(value, bytes):
            return value
        if not isinstance(value, str):
            raise ValueError("frame must be a base64 string")
        # Accept data URLs from canvas.toDataURL()
        if _DATA_URL_MARKER in value:
            value = value.split(_DATA_URL_MARKER, 1)[1]
        try:
            decoded = base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise ValueError("frame is not valid base64") from exc
        if not decoded:
            raise ValueError("frame is empty")
        return decoded


class StopEvent(CamelModel):
    type: Literal["stop"]


class SubscribeRegionEvent(CamelModel):
    type: Literal["subscribeRegion"]
    bounds: BoundingBox


class UnsubscribeRegionEvent(CamelModel):
    type: Literal["unsubscribeRegion"]
    bounds: BoundingBox


ClientEvent = Annotated[
    Union[StartEvent, FrameEvent, StopEvent, SubscribeRegionEvent, UnsubscribeRegionEvent],
    Field(discriminator="type"),
]

_client_event_adapter = TypeAdapter(ClientEvent)


def parse_client_event(raw: str | bytes | dict) -> ClientEvent:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise EventValidationError("Message is not valid JSON") from exc
    if not isinstance(raw, dict):
        raise EventValidationError("Message must be a JSON object")

    try:
        return _client_event_adapter.validate_python(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", "invalid value")
        raise EventValidationError(f"Invalid {raw.get('type', 'message')!s}: {where} {detail}".strip()) from exc


# ---------- Server -> client ----------


class StartedEvent(CamelModel):
    type: Literal["started"] = "started"
    session_id: str


class DetectionEvent(CamelModel):
    type: Literal["detection"] = "detection"
    record_id: str
    location: Location
    confidence: float
    # Accepted predictions in the frame that produced this event
    detection_count: int
    is_new_record: bool


class ProcessedEvent(CamelModel):
    type: Literal["processed"] = "processed"


class StoppedEvent(CamelModel):
    type: Literal["stopped"] = "stopped"


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    message: str


class NewRecordInRegionEvent(CamelModel):
    type: Literal["newRecordInRegion"] = "newRecordInRegion"
    record: PotholeRecord


class RecentRecordsEvent(CamelModel):
    type: Literal["recentRecords"] = "recentRecords"
    records: List[PotholeRecord]


def dump(event: CamelModel) -> dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True)
