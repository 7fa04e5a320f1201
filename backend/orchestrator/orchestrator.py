"""Frame-to-record pipeline: inference, acceptance, image upload, merge-or-create."""
from __future__ import annotations

import asyncio
import logging
import time

from common.config import ACCEPTANCE_THRESHOLD, PLACEHOLDER_IMAGE_TEMPLATE, TARGET_CLASS_KEYWORD
from db.store import PotholeStore
from orchestrator.types import NO_DETECTION, DetectionOutcome, SessionContext
from schemas import Location, PotholeRecord, Prediction
from storage.s3 import S3BlobStore
from vision.client import RoboflowClient

logger = logging.getLogger(__name__)


def placeholder_image_url(now: float | None = None) -> str:
    timestamp_ms = int((time.time() if now is None else now) * 1000)
    return PLACEHOLDER_IMAGE_TEMPLATE.format(timestamp_ms=timestamp_ms)


class DetectionOrchestrator:
    def __init__(
        self,
        vision: RoboflowClient,
        blob_store: S3BlobStore,
        store: PotholeStore,
        acceptance_threshold: float = ACCEPTANCE_THRESHOLD,
        target_keyword: str = TARGET_CLASS_KEYWORD,
    ):
        self.vision = vision
        self.blob_store = blob_store
        self.store = store
        self.acceptance_threshold = acceptance_threshold
        self.target_keyword = target_keyword.lower()

    def accept(self, predictions: list[Prediction]) -> list[Prediction]:
        """Predictions whose class names the target and whose confidence clears the threshold."""
        return [
            p
            for p in predictions
            if self.target_keyword in p.class_name.lower() and p.confidence > self.acceptance_threshold
        ]

    async def process_detection(
        self,
        image_bytes: bytes,
        location: Location,
        session: SessionContext | None = None,
    ) -> DetectionOutcome:
        """Run one frame through the pipeline.

        Inference problems and frames without a qualifying prediction yield
        ``NO_DETECTION``. An unavailable blob store degrades to a placeholder
        image. Store failures propagate.
        """
        result = await self.vision.infer(image_bytes)
        if result.failed:
            logger.debug("[pipeline] Inference failed: %s", result.error)
            return NO_DETECTION

        accepted = self.accept(result.predictions)
        if not accepted:
            return NO_DETECTION

        confidence = max(p.confidence for p in accepted)
        image_url = await self._upload_image(image_bytes, location, confidence)

        record, created = await asyncio.to_thread(
            self.store.upsert_detection,
            location.latitude,
            location.longitude,
            confidence,
            image_url,
            session.user_id if session else None,
        )

        if session is not None:
            await asyncio.to_thread(self.store.increment_session_detections, session.session_id)

        logger.info(
            "[pipeline] %s record %s (confidence=%.2f, accepted=%d)",
            "Created" if created else "Merged into",
            record.id,
            confidence,
            len(accepted),
        )
        return DetectionOutcome(
            record=record,
            confidence=confidence,
            is_new_record=created,
            accepted_predictions=len(accepted),
        )

    async def _upload_image(self, image_bytes: bytes, location: Location, confidence: float) -> str:
        filename = self.blob_store.generate_filename(location.latitude, location.longitude, confidence)
        try:
            return await asyncio.to_thread(self.blob_store.upload, image_bytes, filename)
        except Exception as exc:
            logger.warning("[pipeline] Image upload failed, using placeholder: %s", exc)
            return placeholder_image_url()

    async def get_recent_potholes(self, limit: int) -> list[PotholeRecord]:
        return await asyncio.to_thread(self.store.list_recent, limit)

    async def find_nearby(self, latitude: float, longitude: float) -> PotholeRecord | None:
        return await asyncio.to_thread(self.store.find_nearby, latitude, longitude)
