"""
Custom exception classes for the application.

Run-level failures (bad input, duplicate lookup failure, cancellation)
propagate to the caller. Per-unit failures (one image, one batch) are
contained by the pipeline and reported.
"""

from typing import Optional, Any
from datetime import datetime


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "PRODUCT_SHEET_PARSE_ERROR")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.utcnow().isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ConflictError(AppError):
    """Conflict with existing resource (409)."""

    def __init__(
        self,
        message: str,
        code: str = "CONFLICT",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details
        )


class ExternalServiceError(AppError):
    """External service failure (503)."""

    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[dict] = None,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{service.upper()}_ERROR",
            message=message,
            status_code=503,
            details={"service": service, **(details or {})}
        )


class DatabaseError(AppError):
    """Database operation failed (500)."""

    def __init__(
        self,
        operation: str,
        message: str,
        details: Optional[dict] = None,
        code: str = "DATABASE_ERROR"
    ):
        super().__init__(
            code=code,
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation, **(details or {})}
        )


# ===================
# INPUT VALIDATION
# ===================

class ProductSheetParseError(ValidationError):
    """Product sheet could not be read or has invalid rows."""

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="PRODUCT_SHEET_PARSE_ERROR",
            message=message,
            details=details
        )


class ImageValidationError(ValidationError):
    """One or more images were rejected before ingestion."""

    def __init__(self, errors: list[dict]):
        super().__init__(
            code="IMAGE_VALIDATION_FAILED",
            message=f"Image validation failed with {len(errors)} errors",
            details={"errors": errors}
        )


# ===================
# PIPELINE ERRORS
# ===================

class DuplicateLookupError(ExternalServiceError):
    """Existing-SKU lookup failed; ingestion is blocked."""

    def __init__(self, sku_count: int, reason: str):
        super().__init__(
            service="duplicate_lookup",
            code="DUPLICATE_LOOKUP_FAILED",
            message="Could not check existing SKUs",
            details={"sku_count": sku_count, "reason": reason}
        )


class IngestionCancelledError(ConflictError):
    """Caller cancelled ingestion at the duplicate prompt."""

    def __init__(self, duplicate_skus: list[str]):
        super().__init__(
            code="INGESTION_CANCELLED",
            message=f"Ingestion cancelled with {len(duplicate_skus)} duplicate SKUs",
            details={"duplicate_skus": duplicate_skus}
        )


class CompressionError(AppError):
    """Single image could not be compressed. Never fatal to a run."""

    def __init__(self, file_name: str, reason: str):
        super().__init__(
            code="IMAGE_COMPRESSION_FAILED",
            message=f"Could not compress {file_name}",
            status_code=500,
            details={"file_name": file_name, "reason": reason}
        )


class BatchPersistError(DatabaseError):
    """Single batch failed after retries. Does not roll back other batches."""

    def __init__(self, batch_index: int, record_count: int, error: BaseException):
        super().__init__(
            operation="insert",
            code="BATCH_PERSIST_FAILED",
            message=str(error) or type(error).__name__,
            details={
                "batch_index": batch_index,
                "record_count": record_count,
                "error_type": type(error).__name__,
            }
        )
        self.original_error = error
