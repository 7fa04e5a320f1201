"""Custom exceptions for the detection pipeline and its store."""


class PotholeMapError(Exception):
    """Base pothole map exception."""


class StoreError(PotholeMapError):
    """Raised when a database operation fails."""


class RecordNotFoundError(PotholeMapError):
    """Raised when a pothole record does not exist."""


class SessionNotFoundError(PotholeMapError):
    """Raised when a detection session does not exist."""


class DuplicateVoteError(PotholeMapError):
    """Raised when a user has already confirmed a pothole."""


class InvalidLocationError(PotholeMapError):
    """Raised when coordinates fall outside valid geographic ranges."""


class BlobUploadError(PotholeMapError):
    """Raised when an image cannot be written to object storage."""
