"""Exceptions raised by the coordination layer.

Contention and not-found conditions are never raised; they come back as typed
result objects. Only conditions that make the layer unusable are exceptions.
"""


class CoordinationError(Exception):
    """Base class for coordination-layer failures."""


class StorageInitError(CoordinationError):
    """Base storage directories could not be created."""

    def __init__(self, path, cause: Exception):
        super().__init__(f"Failed to create storage directory {path}: {cause}")
        self.path = path
        self.cause = cause
