import logging
import os
from pathlib import Path
from typing import Optional

# Configure logger for config module warnings
logger = logging.getLogger(__name__)


def get_int_env(
    name: str,
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> int:
    """Get an integer from environment variable with error handling and validation.

    Args:
        name: Environment variable name
        default: Default value if env var is missing or invalid
        min_val: Optional minimum value (inclusive)
        max_val: Optional maximum value (inclusive)

    Returns:
        Parsed integer value, or default if parsing fails or value is out of range
    """
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default

    try:
        result = int(value)
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using default {default}")
        return default

    # Range validation (only applied to user-provided values)
    if min_val is not None and result < min_val:
        logger.warning(f"{name}={result} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and result > max_val:
        logger.warning(f"{name}={result} is above maximum {max_val}, using default {default}")
        return default

    return result


def get_bool_env(name: str, default: bool) -> bool:
    """Get a boolean flag from the environment ("1", "true", "yes" are truthy)."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_csv_env(value: str) -> list:
    """Split a comma-separated env value, dropping blanks."""
    return [item.strip() for item in value.split(",") if item.strip()]


# Deployment environment ("development", "production", ...)
ENV = os.getenv("ENV", "development").strip().lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Storage root - every relative media path in the database is joined onto this
MEDIA_PATH = Path(os.getenv("MEDIA_PATH", "./media"))

# Transcoding ladder. Order matters: the worker runs rungs bottom-up, one at a time.
QUALITY_LADDER = [
    {"name": "240p", "resolution": "426x240", "height": 240, "bitrate": "400k"},
    {"name": "360p", "resolution": "640x360", "height": 360, "bitrate": "800k"},
    {"name": "480p", "resolution": "854x480", "height": 480, "bitrate": "1500k"},
    {"name": "720p", "resolution": "1280x720", "height": 720, "bitrate": "2500k"},
    {"name": "1080p", "resolution": "1920x1080", "height": 1080, "bitrate": "4000k"},
]
QUALITY_NAMES = frozenset(q["name"] for q in QUALITY_LADDER)
ORIGINAL_QUALITY = "original"

# HLS output settings
HLS_SEGMENT_DURATION = get_int_env("HLS_SEGMENT_DURATION", 10, min_val=1)
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
# Per-rung ffmpeg timeout in seconds; 0 lets a rung run to completion
FFMPEG_TIMEOUT = get_int_env("FFMPEG_TIMEOUT", 0, min_val=0)

# Database configuration - PostgreSQL is the default.
# Set DATABASE_URL to override (e.g., for SQLite: sqlite:///./animestream.db)
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = get_int_env("DB_PORT", 5432, min_val=1, max_val=65535)
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "postgres")
DB_NAME = os.getenv("DB_NAME", "animestreaming")
DB_SSLMODE = os.getenv("DB_SSLMODE", "disable")
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
DB_POOL_MIN_SIZE = get_int_env("DB_POOL_MIN_SIZE", 10, min_val=1)
DB_POOL_MAX_SIZE = get_int_env("DB_POOL_MAX_SIZE", 100, min_val=1)

# Server port
PORT = get_int_env("PORT", 8080, min_val=1, max_val=65535)

# CORS Configuration
# Comma-separated origins, e.g. CORS_ALLOWED_ORIGINS=http://localhost:3000,https://example.com
CORS_ALLOWED_ORIGINS = parse_csv_env(os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000"))

# JWT settings (HS256 bearer tokens)
DEFAULT_JWT_SECRET = "yoursecretkey"
JWT_SECRET = os.getenv("JWT_SECRET", DEFAULT_JWT_SECRET)
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = get_int_env("JWT_EXPIRY_HOURS", 24, min_val=1)

if ENV == "production" and JWT_SECRET == DEFAULT_JWT_SECRET:
    logger.warning("JWT_SECRET is using the built-in default in production. Set JWT_SECRET.")

# Transcoding worker settings
# Number of worker tasks embedded in the API process (0 = run `python -m worker.transcoder` instead)
TRANSCODE_CONCURRENCY = get_int_env("TRANSCODE_CONCURRENCY", 1, min_val=0, max_val=64)
# Fallback poll interval when no in-process wake-up arrives (e.g., jobs queued by another process)
WORKER_POLL_INTERVAL = get_int_env("WORKER_POLL_INTERVAL", 30, min_val=1)

# Upload size limits
MAX_VIDEO_UPLOAD_SIZE = get_int_env("MAX_VIDEO_UPLOAD_SIZE", 500 * 1024 * 1024, min_val=1)  # 500 MiB
MAX_IMAGE_UPLOAD_SIZE = get_int_env("MAX_IMAGE_UPLOAD_SIZE", 10 * 1024 * 1024, min_val=1)  # 10 MiB
MAX_FORM_FIELD_SIZE = get_int_env("MAX_FORM_FIELD_SIZE", 32 * 1024 * 1024, min_val=1024)  # 32 MiB
UPLOAD_CHUNK_SIZE = get_int_env("UPLOAD_CHUNK_SIZE", 1024 * 1024, min_val=1024)  # 1 MiB chunks
STREAM_CHUNK_SIZE = get_int_env("STREAM_CHUNK_SIZE", 64 * 1024, min_val=1024)  # 64 KiB chunks

SUPPORTED_VIDEO_EXTENSIONS = frozenset([".mp4", ".mkv", ".webm", ".mov", ".avi"])
SUPPORTED_IMAGE_EXTENSIONS = frozenset([".jpg", ".jpeg", ".png", ".webp", ".gif"])

# Listing defaults
DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 100

# Rate Limiting Configuration
RATE_LIMIT_ENABLED = get_bool_env("RATE_LIMIT_ENABLED", True)
RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "200/minute")
RATE_LIMIT_UPLOAD = os.getenv("RATE_LIMIT_UPLOAD", "30/hour")
# Options: "memory://" (default, per-process), or a Redis URL like "redis://localhost:6379"
RATE_LIMIT_STORAGE_URL = os.getenv("RATE_LIMIT_STORAGE_URL", "memory://")

# Only trust X-Forwarded-For when the direct peer is one of these IPs
TRUSTED_PROXIES = set(parse_csv_env(os.getenv("TRUSTED_PROXIES", "")))

# Storage health check timeout (seconds)
STORAGE_CHECK_TIMEOUT = get_int_env("STORAGE_CHECK_TIMEOUT", 2, min_val=1)

# Error message truncation limits
ERROR_SUMMARY_MAX_LENGTH = get_int_env("ERROR_SUMMARY_MAX_LENGTH", 100, min_val=10)
ERROR_DETAIL_MAX_LENGTH = get_int_env("ERROR_DETAIL_MAX_LENGTH", 500, min_val=10)

# Ensure the media tree exists (skip in test/CI environments)
if not os.environ.get("ANIMESTREAM_TEST_MODE"):
    try:
        MEDIA_PATH.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        logger.warning(f"Cannot create media root {MEDIA_PATH}; storage will be checked at startup")
