"""Types for the detection pipeline."""
from __future__ import annotations

from dataclasses import dataclass

from schemas import PotholeRecord


@dataclass(frozen=True)
class SessionContext:
    """Detection session a frame belongs to."""

    session_id: str
    user_id: str | None = None


@dataclass(frozen=True)
class DetectionOutcome:
    """Result of processing one frame.

    ``record`` is None when nothing qualifying was found. ``accepted_predictions``
    counts the predictions in the frame that passed the class and confidence
    filter.
    """

    record: PotholeRecord | None = None
    confidence: float = 0.0
    is_new_record: bool = False
    accepted_predictions: int = 0

    @property
    def detected(self) -> bool:
        return self.record is not None

    @property
    def record_id(self) -> str | None:
        return self.record.id if self.record is not None else None


NO_DETECTION = DetectionOutcome()
