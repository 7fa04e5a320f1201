"""
Client for the hosted Roboflow pothole model.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import List

import httpx
from pydantic import TypeAdapter, ValidationError

from common.config import (
    INFERENCE_CONFIDENCE_FLOOR,
    INFERENCE_TIMEOUT_SECONDS,
    ROBOFLOW_API_KEY,
    ROBOFLOW_API_URL,
    ROBOFLOW_MODEL_VERSION,
    ROBOFLOW_PROJECT_ID,
)
from schemas import Prediction
from vision.preprocess import ImageDecodeError, compress_frame

logger = logging.getLogger(__name__)

_predictions_adapter = TypeAdapter(List[Prediction])


@dataclass
class InferenceResult:
    """Predictions for one frame, or the reason there are none."""

    predictions: list[Prediction] = field(default_factory=list)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @classmethod
    def failure(cls, error: str) -> "InferenceResult":
        return cls(predictions=[], error=error)


class RoboflowClient:
    """Posts compressed frames to the detect endpoint.

    ``infer`` never raises: timeouts, HTTP errors and malformed bodies come
    back as a failed ``InferenceResult`` and the next frame is an
    independent attempt.
    """

    def __init__(
        self,
        project_id: str = ROBOFLOW_PROJECT_ID,
        model_version: str = ROBOFLOW_MODEL_VERSION,
        api_key: str = ROBOFLOW_API_KEY,
        api_url: str = ROBOFLOW_API_URL,
        confidence_floor: float = INFERENCE_CONFIDENCE_FLOOR,
        timeout_seconds: float = INFERENCE_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.project_id = project_id
        self.model_version = model_version
        self.api_url = api_url.rstrip("/")
        self.confidence_floor = confidence_floor
        self.timeout_seconds = timeout_seconds
        self._api_key = api_key
        # One pooled client for the life of the service, not one per frame
        self._owns_http_client = http_client is None
        self._http_client = http_client if http_client is not None else httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.project_id and self._api_key)

    @property
    def endpoint(self) -> str:
        return f"{self.api_url}/{self.project_id}/{self.model_version}"

    async def infer(self, image_bytes: bytes) -> InferenceResult:
        if not self.configured:
            logger.warning("[inference] Roboflow project or API key not set; skipping frame")
            return InferenceResult.failure("inference not configured")

        try:
            compressed = await asyncio.to_thread(compress_frame, image_bytes)
        except ImageDecodeError as exc:
            logger.warning("[inference] Rejected frame: %s", exc)
            return InferenceResult.failure(str(exc))

        started = time.monotonic()
        try:
            response = await self._post(base64.b64encode(compressed))
        except httpx.TimeoutException:
            logger.warning("[inference] Request timed out after %.1fs", self.timeout_seconds)
            return InferenceResult.failure("timeout")
        except httpx.HTTPError as exc:
            logger.warning("[inference] Request failed: %s", exc)
            return InferenceResult.failure(f"{type(exc).__name__}: {exc}")

        elapsed_ms = (time.monotonic() - started) * 1000
        if not response.is_success:
            logger.warning("[inference] Endpoint returned %s after %.0fms", response.status_code, elapsed_ms)
            return InferenceResult.failure(f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            logger.warning("[inference] Endpoint returned non-JSON response")
            return InferenceResult.failure("malformed response")

        if not isinstance(payload, dict) or not isinstance(payload.get("predictions"), list):
            logger.warning("[inference] Response missing predictions list")
            return InferenceResult.failure("malformed response")

        try:
            predictions = _predictions_adapter.validate_python(payload["predictions"])
        except ValidationError as exc:
            logger.warning("[inference] Invalid prediction entries: %s", exc.error_count())
            return InferenceResult.failure("malformed response")

        logger.debug(
            "[inference] %d prediction(s) in %.0fms (%d bytes sent)",
            len(predictions),
            elapsed_ms,
            len(compressed),
        )
        return InferenceResult(predictions=predictions)

    async def _post(self, body: bytes) -> httpx.Response:
        params = {
            "api_key": self._api_key,
            # Roboflow expects the threshold as a percentage
            "confidence": round(self.confidence_floor * 100),
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        return await self._http_client.post(
            self.endpoint,
            content=body,
            params=params,
            headers=headers,
            timeout=self.timeout_seconds,
        )

    async def aclose(self) -> None:
        """Close the HTTP pool if this client created it."""
        if self._owns_http_client:
            await self._http_client.aclose()
