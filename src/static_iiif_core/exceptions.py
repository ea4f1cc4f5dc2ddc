"""Error taxonomy for the static IIIF pipeline.

Only `SourceUnreadable` is allowed to abort a job; everything else is recovered
locally and recorded.
"""

from __future__ import annotations


class StaticIIIFError(Exception):
    """Base class for all pipeline errors."""


class InvalidJobError(StaticIIIFError, ValueError):
    """Raised when a job or output spec violates its invariants."""


class MalformedSizeRequest(StaticIIIFError, ValueError):
    """Raised when a size request does not match the IIIF size grammar."""

    def __init__(self, request: str, reason: str = "unrecognized size syntax"):
        self.request = request
        super().__init__(f"Malformed size request {request!r}: {reason}")


class SourceUnreadable(StaticIIIFError):
    """Raised when the source image cannot be fetched or decoded."""


class EngineUnavailable(StaticIIIFError, RuntimeError):
    """Raised when the image engine is missing a required codec."""


class DerivativeOperationFailed(StaticIIIFError):
    """Raised when one tile, rendition or container write fails."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


class DescriptorReadFailed(StaticIIIFError):
    """Raised when the info.json fragment left by the tiling step is missing or invalid."""


class BlobStoreError(StaticIIIFError, OSError):
    """Raised when a blob store cannot read or write a location."""
