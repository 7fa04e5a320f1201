"""
Frame preprocessing before upload to the hosted model.
"""
from __future__ import annotations

import cv2
import numpy as np

from common.config import INFERENCE_JPEG_QUALITY, INFERENCE_MAX_HEIGHT, INFERENCE_MAX_WIDTH


class ImageDecodeError(ValueError):
    """Raised when frame bytes are not a decodable image."""


def fit_within(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Scale (width, height) to fit the box, preserving aspect. Never upscales."""
    scale = min(max_width / width, max_height / height, 1.0)
    return max(1, round(width * scale)), max(1, round(height * scale))


def compress_frame(
    image_bytes: bytes,
    max_width: int = INFERENCE_MAX_WIDTH,
    max_height: int = INFERENCE_MAX_HEIGHT,
    quality: int = INFERENCE_JPEG_QUALITY,
) -> bytes:
    """Downscale to the bounding box and re-encode as JPEG."""
    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    frame = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    if frame is None:
        raise ImageDecodeError("Frame is not a decodable image")

    height, width = frame.shape[:2]
    new_width, new_height = fit_within(width, height, max_width, max_height)
    if (new_width, new_height) != (width, height):
        frame = cv2.resize(frame, (new_width, new_height), interpolation=cv2.INTER_AREA)

    ok, jpeg = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise ImageDecodeError("Failed to encode frame as JPEG")
    return jpeg.tobytes()
