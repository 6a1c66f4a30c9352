"""Utility modules."""

from .logging_config import (
    get_logger,
    setup_logging,
    BuildmapFormatter,
    FileFormatter,
)
from .retry import (
    retry_with_backoff,
    RetryConfig,
    RetryableRequest,
    DEFAULT_RETRY_CONFIG,
)
from .validation import (
    validate_coordinates,
    validate_geometry,
    validate_record_fields,
    ValidationError,
    InputContractError,
    GeometryValidation,
)

__all__ = [
    # Logging
    "get_logger",
    "setup_logging",
    "BuildmapFormatter",
    "FileFormatter",
    # Retry
    "retry_with_backoff",
    "RetryConfig",
    "RetryableRequest",
    "DEFAULT_RETRY_CONFIG",
    # Validation
    "validate_coordinates",
    "validate_geometry",
    "validate_record_fields",
    "ValidationError",
    "InputContractError",
    "GeometryValidation",
]
