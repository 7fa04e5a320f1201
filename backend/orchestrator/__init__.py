"""Detection pipeline package."""

from .exceptions import (
    BlobUploadError,
    DuplicateVoteError,
    InvalidLocationError,
    PotholeMapError,
    RecordNotFoundError,
    SessionNotFoundError,
    StoreError,
)
from .types import NO_DETECTION, DetectionOutcome, SessionContext

__all__ = [
    "BlobUploadError",
    "DetectionOutcome",
    "DuplicateVoteError",
    "InvalidLocationError",
    "NO_DETECTION",
    "PotholeMapError",
    "RecordNotFoundError",
    "SessionContext",
    "SessionNotFoundError",
    "StoreError",
]
