# refinery/errors.py
"""
Exception types raised by the Refinery services.

Gate failures are recorded as data (validation_failures rows), not raised.
A task whose predecessor is not finished is not an error either; it simply
is not returned by ``get_next_task``.
"""

from typing import Any


class RefineryError(Exception):
    """Base class for Refinery errors."""
    pass


class NotFoundError(RefineryError):
    """Raised when an operation targets a missing pipeline, task, item or document."""

    def __init__(self, entity: str, entity_id: Any = None, message: str = None):
        self.entity = entity
        self.entity_id = entity_id
        if message is None:
            message = f"{entity} not found: {entity_id}" if entity_id is not None else f"{entity} not found"
        super().__init__(message)


class ExtractionFailureError(RefineryError):
    """Raised when a document cannot be extracted (corrupt, encrypted, unsupported)."""
    pass


class TransientTaskError(RefineryError):
    """Raised by collaborators for failures worth retrying (network, rate limits)."""
    pass


class TransformationRetryExhaustedError(RefineryError):
    """Raised when a mapping has used up its transformation attempts."""
    pass


class CollaboratorNotConfiguredError(RefineryError):
    """Raised when a task needs a collaborator the worker was started without."""
    pass


class CollaboratorLoadError(RefineryError):
    """Raised when a configured collaborator path cannot be imported or built."""
    pass
