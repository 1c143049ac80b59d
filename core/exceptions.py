# core/exceptions.py
"""Define standardized exception types for the EFB cache core.

This module provides a small exception hierarchy and helpers used across `core/`
to propagate actionable error details without losing the original exception.
"""

from typing import Any


class EFBCacheError(Exception):
    """Base exception for all cache subsystem errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(EFBCacheError):
    """Invalid key, TTL or priority passed to a cache API."""


class PrefetchError(EFBCacheError):
    """A speculative fetch or compute failed.

    Notes:
        Prefetching is best-effort. This error is raised and caught at the
        prefetch task boundary only; callers that recorded the originating user
        action never see it.
    """


class DependencyInconsistencyError(EFBCacheError):
    """The forward and reverse dependency indexes disagree."""


class StoreDestroyedError(EFBCacheError):
    """An operation was invoked on a store after `destroy()`.

    Policy:
        Fail fast instead of silently no-op'ing so lifecycle bugs surface in tests.
    """


def create_error_context(**kwargs: Any) -> dict[str, Any]:
    """Build a context dictionary for structured errors.

    Args:
        **kwargs: Key-value pairs to include.

    Returns:
        A dictionary containing only keys whose values are not `None`.
    """
    return {k: v for k, v in kwargs.items() if v is not None}


def wrap_prefetch_error(action: str, original_error: BaseException, **context: Any) -> PrefetchError:
    """Convert an exception raised while prefetching into a `PrefetchError`.

    Args:
        action: The predicted action whose data was being prefetched.
        original_error: The caught exception.
        **context: Additional structured context to attach.
    """
    if isinstance(original_error, PrefetchError):
        return original_error

    error_details = create_error_context(
        operation="prefetch",
        action=action,
        original_error=str(original_error) or None,
        error_type=type(original_error).__name__,
        **context,
    )
    return PrefetchError(f"Prefetch failed for action {action}", details=error_details)
