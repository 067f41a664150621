"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    ValidationError,
    ConflictError,
    ExternalServiceError,
    DatabaseError,

    # Input validation
    ProductSheetParseError,
    ImageValidationError,

    # Pipeline
    DuplicateLookupError,
    IngestionCancelledError,
    CompressionError,
    BatchPersistError,
)

__all__ = [
    # Base
    "AppError",
    "ValidationError",
    "ConflictError",
    "ExternalServiceError",
    "DatabaseError",

    # Input validation
    "ProductSheetParseError",
    "ImageValidationError",

    # Pipeline
    "DuplicateLookupError",
    "IngestionCancelledError",
    "CompressionError",
    "BatchPersistError",
]
