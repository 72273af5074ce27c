"""
Error types shared across the usage pipeline.

Validation errors are raised before any I/O; ingestion and pricing errors are
terminal for a run unless recorded as soft failures by the caller.
"""


class InputValidationError(ValueError):
    """Raised when a caller-supplied option is malformed."""


class SourceParseError(RuntimeError):
    """Raised when one or more explicitly requested sources fail to parse."""


class PricingLoadError(RuntimeError):
    """Raised when no usable rate table could be loaded."""


class OfflinePricingUnavailableError(PricingLoadError):
    """Raised in offline mode when no cached rate table exists."""


class RateTablePayloadError(ValueError):
    """Raised when a remote rate-table document has no usable entries."""
