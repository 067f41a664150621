"""
Pydantic models for validation and serialization.
"""

from models.base import BaseSchema
from models.bulk_upload import (
    DEFAULT_IMAGE,
    MatchMethod,
    AssignmentStatus,
    DuplicatePolicy,
    ProductRow,
    ImageAsset,
    NormalizedImage,
    ScoredCandidate,
    MatchResult,
    ProductAssignment,
    MatchStats,
    MatchPreview,
    DuplicateRecord,
    IngestionProgress,
    CompressionProgress,
    BatchOutcome,
    BatchFailure,
    WriteResult,
    ItemFailure,
    BatchFailureReport,
    IngestionReport,
)

__all__ = [
    # Base
    "BaseSchema",

    # Bulk upload
    "DEFAULT_IMAGE",
    "MatchMethod",
    "AssignmentStatus",
    "DuplicatePolicy",
    "ProductRow",
    "ImageAsset",
    "NormalizedImage",
    "ScoredCandidate",
    "MatchResult",
    "ProductAssignment",
    "MatchStats",
    "MatchPreview",
    "DuplicateRecord",
    "IngestionProgress",
    "CompressionProgress",
    "BatchOutcome",
    "BatchFailure",
    "WriteResult",
    "ItemFailure",
    "BatchFailureReport",
    "IngestionReport",
]
