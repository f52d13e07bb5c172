"""
Standardized exception handling utilities.

Route handlers are wrapped so that HTTPExceptions and domain errors pass
through to the app's handlers untouched, while anything unexpected is logged
with its traceback and surfaced as a short, generic 500.
"""

import functools
import logging
from typing import Any, Callable, TypeVar

from fastapi import HTTPException

from api.db_retry import DatabaseRetryableError
from api.errors import CatalogError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def handle_api_exceptions(
    operation_name: str,
    error_detail: str = "Internal server error",
    status_code: int = 500,
    log_errors: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for standardized exception handling in API endpoints.

    Args:
        operation_name: Name of the operation for logging context
        error_detail: Message returned for unexpected exceptions
        status_code: Status code for unexpected exceptions
        log_errors: Whether to log unexpected exceptions

    Example:
        @handle_api_exceptions("upload_cover", "Failed to upload cover")
        async def upload_cover(...):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except (HTTPException, CatalogError, DatabaseRetryableError):
                # These carry their own status codes
                raise
            except Exception as e:
                if log_errors:
                    logger.exception(f"Unexpected error in {operation_name}: {e}")
                raise HTTPException(status_code=status_code, detail=error_detail) from e
        return wrapper
    return decorator
