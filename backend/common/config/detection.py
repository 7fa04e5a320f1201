"""Detection pipeline tunables.

Every value can be overridden by an environment variable of the same name.
"""
import os

from .paths import BASE_DIR  # noqa: F401 - loads .env before reading variables

# Geographic matching: half-width of the lat/lng box treated as "same pothole" (~11 m)
PROXIMITY_EPSILON_DEG = float(os.getenv("PROXIMITY_EPSILON_DEG", "0.0001"))

# Inference request + acceptance
INFERENCE_CONFIDENCE_FLOOR = float(os.getenv("INFERENCE_CONFIDENCE_FLOOR", "0.2"))
ACCEPTANCE_THRESHOLD = float(os.getenv("ACCEPTANCE_THRESHOLD", "0.7"))
TARGET_CLASS_KEYWORD = os.getenv("TARGET_CLASS_KEYWORD", "pothole").strip().lower()
INFERENCE_TIMEOUT_SECONDS = float(os.getenv("INFERENCE_TIMEOUT_SECONDS", "10"))
INFERENCE_MAX_WIDTH = int(os.getenv("INFERENCE_MAX_WIDTH", "640"))
INFERENCE_MAX_HEIGHT = int(os.getenv("INFERENCE_MAX_HEIGHT", "480"))
INFERENCE_JPEG_QUALITY = int(os.getenv("INFERENCE_JPEG_QUALITY", "75"))

# Roboflow hosted model
ROBOFLOW_API_URL = os.getenv("ROBOFLOW_API_URL", "https://detect.roboflow.com").rstrip("/")
ROBOFLOW_PROJECT_ID = os.getenv("ROBOFLOW_PROJECT_ID", "").strip()
ROBOFLOW_MODEL_VERSION = os.getenv("ROBOFLOW_MODEL_VERSION", "1").strip()
ROBOFLOW_API_KEY = os.getenv("ROBOFLOW_API_KEY", "").strip()

# Realtime channel
FRAME_COOLDOWN_SECONDS = float(os.getenv("FRAME_COOLDOWN_SECONDS", "1.0"))
REGION_CELL_DEGREES = float(os.getenv("REGION_CELL_DEGREES", "1.0"))
MAX_REGION_CELLS = int(os.getenv("MAX_REGION_CELLS", "64"))

# Periodic snapshot broadcast
BROADCAST_INTERVAL_SECONDS = float(os.getenv("BROADCAST_INTERVAL_SECONDS", "30"))
RECENT_RECORDS_LIMIT = int(os.getenv("RECENT_RECORDS_LIMIT", "50"))

# Query limits
DEFAULT_LIST_LIMIT = int(os.getenv("DEFAULT_LIST_LIMIT", "100"))
MAX_LIST_LIMIT = int(os.getenv("MAX_LIST_LIMIT", "500"))
BOUNDS_QUERY_LIMIT = int(os.getenv("BOUNDS_QUERY_LIMIT", "200"))

# Placeholder image when the blob store is unavailable
PLACEHOLDER_IMAGE_TEMPLATE = "placeholder_{timestamp_ms}.jpg"
