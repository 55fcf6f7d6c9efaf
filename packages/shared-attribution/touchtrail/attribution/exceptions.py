"""Custom exceptions for attribution."""

from __future__ import annotations


class AttributionError(Exception):
    """Base exception for attribution errors."""

    pass


class MalformedTouchpoint(AttributionError):
    """Raised when a raw event row cannot be turned into a touchpoint."""

    pass


class ValidationError(AttributionError):
    """Raised when model settings fail range or sum checks."""

    def __init__(self, errors: list[str], model: str | None = None):
        self.errors = list(errors)
        self.model = model
        prefix = f"Invalid settings for {model}" if model else "Invalid settings"
        super().__init__(f"{prefix}: {'; '.join(self.errors)}")


class UnknownModel(AttributionError):
    """Raised when a model name is not in the registry."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown attribution model: {name}")


class ContractViolation(AttributionError):
    """Raised when the calculator is handed input it cannot accept."""

    pass


class CollaboratorError(AttributionError):
    """Raised when an external store fails."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class DuplicateAttributionError(CollaboratorError):
    """Raised when results already exist for a conversion and model."""

    def __init__(self, conversion_id: str, model: str):
        self.conversion_id = conversion_id
        self.model = model
        super().__init__(
            f"Attribution results already stored for conversion {conversion_id} ({model})",
            retryable=False,
        )


class AttributionRunError(AttributionError):
    """Raised when processing a single conversion fails."""

    def __init__(self, conversion_id: str, cause: Exception):
        self.conversion_id = conversion_id
        self.cause = cause
        self.retryable = getattr(cause, "retryable", False)
        super().__init__(f"Attribution failed for conversion {conversion_id}: {cause}")
