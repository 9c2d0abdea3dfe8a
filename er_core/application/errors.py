from __future__ import annotations


class AppError(RuntimeError):
    """Base application-level error."""


class NotFoundError(AppError):
    """Missing row, or a row owned by another hospital."""


class ConflictError(AppError):
    """State conflict: terminal encounter, duplicate open alert, lost update."""


class ValidationError(AppError):
    """Input validation failure."""


class TransientError(AppError):
    """Retryable delivery failure (broadcast or database hiccup)."""
