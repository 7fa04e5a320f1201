"""S3 configuration."""
import os

from .paths import BASE_DIR  # noqa: F401 - loads .env before reading variables

# S3 connection settings
S3_ENDPOINT = os.getenv("S3_ENDPOINT", "https://hel1.your-objectstorage.com").strip()
S3_REGION = os.getenv("S3_REGION", "hel1").strip()
S3_BUCKET = os.getenv("S3_BUCKET", "potholemap").strip()
S3_PREFIX = os.getenv("S3_PREFIX", "potholemap").strip().strip("/")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY", "").strip()
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY", "").strip()
S3_PUBLIC_BASE_URL = os.getenv("S3_PUBLIC_BASE_URL", "").strip()
# SigV4 presigned URLs are capped at 7 days.
S3_PRESIGN_EXPIRES = min(int(os.getenv("S3_PRESIGN_EXPIRES", "604800")), 604800)

# Object key folder for detection images (relative to S3_PREFIX)
POTHOLE_IMAGES_FOLDER = "potholes"
POTHOLE_IMAGE_CACHE_CONTROL = "public, max-age=31536000"
