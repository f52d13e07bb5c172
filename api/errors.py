"""
Domain errors and error-message sanitizing.

Every failure the catalog, intake, resolver and streamer can raise is a
CatalogError subclass carrying its HTTP status. The app's exception handlers
translate them; nothing below the HTTP layer builds responses.

Tool output (ffmpeg stderr, driver messages) is sanitized before it is stored
on a job row or shown to a client, so internal paths never leak.
"""
import logging
import re
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Base class for domain errors. Subclasses fix the HTTP status."""

    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidInputError(CatalogError):
    status_code = 400
    default_detail = "Invalid input"


class UnauthenticatedError(CatalogError):
    status_code = 401
    default_detail = "Not authenticated"


class ForbiddenError(CatalogError):
    status_code = 403
    default_detail = "Admin access required"


class NotFoundError(CatalogError):
    status_code = 404
    default_detail = "Not found"


class RangeNotSatisfiableError(CatalogError):
    """The Range header cannot be served for a file of `size` bytes."""

    status_code = 416
    default_detail = "Requested range not satisfiable"

    def __init__(self, size: int, detail: Optional[str] = None):
        self.size = size
        super().__init__(detail)


class StorageFailureError(CatalogError):
    default_detail = "Storage error"


class DatabaseFailureError(CatalogError):
    default_detail = "Database error"


class ExternalToolFailureError(CatalogError):
    default_detail = "Video processing failed"


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/mnt/\w+/',            # Mount paths
    r'/tmp/\w+',             # Temp paths
    r'/var/\w+/',            # Var paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'ffmpeg:.*\.(mp4|m3u8|ts)',
    r'Permission denied',
    r'No such file or directory',
    r'UNIQUE constraint failed',
    r'sqlite3?\.',
    r'Error: .+\.py:\d+',
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "timeout": "Video processing timed out.",
    "transcode_failed": "Video transcoding failed.",
    "invalid_data": "Could not read video file. The file may be corrupted or in an unsupported format.",
    "source_not_found": "Source file not found. Please re-upload the video.",
    "tool_missing": "Video processing tool is not available on this server.",
    "database": "A database error occurred. Please try again.",
    "permission": "A file access error occurred. Please contact support.",
    "general": "An error occurred while processing your request. Please try again.",
}


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Cut error to max_length characters, marking the cut with '...'."""
    if error is None or len(error) <= max_length:
        return error
    if max_length <= 3:
        return error[:max_length]
    return error[: max_length - 3] + "..."


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Sanitize an error message for safe display or storage.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "job_id=123")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "timeout" in error_lower or "timed out" in error_lower:
        return ERROR_MESSAGES["timeout"]

    if "not installed" in error_lower or "executable not found" in error_lower:
        return ERROR_MESSAGES["tool_missing"]

    if "invalid data found" in error_lower or "moov atom not found" in error_lower:
        return ERROR_MESSAGES["invalid_data"]

    if "no such file" in error_lower or "source file not found" in error_lower:
        return ERROR_MESSAGES["source_not_found"]

    if "ffmpeg" in error_lower or "transcode" in error_lower:
        return ERROR_MESSAGES["transcode_failed"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    if "permission" in error_lower:
        return ERROR_MESSAGES["permission"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are passed through
    if len(error) < ERROR_SUMMARY_MAX_LENGTH and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]


def summarize_job_error(rung: Optional[str], error: Optional[str], context: str = "") -> str:
    """Build the message stored on a failed job row: '<rung>: <sanitized reason>'."""
    reason = sanitize_error_message(error or "transcode failed", context=context)
    summary = f"{rung}: {reason}" if rung else reason
    return truncate_error(summary)
