"""Error taxonomy for FieldCapture."""

from __future__ import annotations

from typing import Optional


class FieldCaptureError(Exception):
    """Base class for all FieldCapture errors."""


class StorageUnavailable(FieldCaptureError):
    """Local store I/O failed (locked, full, corrupted). Retryable."""


class NetworkError(FieldCaptureError):
    """Remote store or realtime transport failed. Retryable."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ValidationError(FieldCaptureError, ValueError):
    """A mutation was rejected before anything was written."""
