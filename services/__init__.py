"""
Business logic services.

Each module handles one stage of the bulk upload pipeline.
"""

from services.progress_tracker import ProgressTracker
from services.batch_writer import BatchWriter, chunk_records
from services.matching_service import ManualOverrides, match, match_images, resolve_assignments
from services.duplicate_service import DuplicateCheck, check_duplicates, detect_duplicates
from services.media_service import MediaNormalizer, CompressionProgressTracker, validate_images
from services.catalog_store import SupabaseCatalogStore, get_catalog_store
from services.bulk_upload_service import BulkUploadService, get_bulk_upload_service

__all__ = [
    "ProgressTracker",
    "BatchWriter",
    "chunk_records",
    "ManualOverrides",
    "match",
    "match_images",
    "resolve_assignments",
    "DuplicateCheck",
    "check_duplicates",
    "detect_duplicates",
    "MediaNormalizer",
    "CompressionProgressTracker",
    "validate_images",
    "SupabaseCatalogStore",
    "get_catalog_store",
    "BulkUploadService",
    "get_bulk_upload_service",
]
