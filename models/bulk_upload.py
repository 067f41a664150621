"""
Bulk upload schemas.

Pydantic models cover everything that crosses the API boundary. Binary
payloads (image bytes) and per-batch outcomes carrying live exceptions are
plain dataclasses, like the parser result records.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import ConfigDict, Field, field_validator

from models.base import BaseSchema


DEFAULT_IMAGE = "default"


class MatchMethod(str, Enum):
    """How an image was paired with a product row."""
    EXACT = "exact"
    CONTAINS = "contains"
    FUZZY = "fuzzy"
    NONE = "none"
    MANUAL = "manual"


class AssignmentStatus(str, Enum):
    """Per-product outcome of matching."""
    MATCHED = "matched"
    DEFAULT = "default"
    UNMATCHED = "unmatched"


class DuplicatePolicy(str, Enum):
    """What to do when the sheet contains SKUs that already exist."""
    SKIP = "skip"
    CANCEL = "cancel"


# ===================
# INPUT RECORDS
# ===================

class ProductRow(BaseSchema):
    """
    One parsed product from the merchant's sheet.

    Immutable once parsed. Prices are integer cents.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()), description="Row id, key for manual overrides")
    sku: str = Field(..., min_length=1, max_length=50, description="Merchant SKU, unique within the sheet")
    name: str = Field(..., min_length=1, max_length=200, description="Display name (nombre)")
    price: int = Field(..., gt=0, description="Retail price in cents")
    wholesale_price: Optional[int] = Field(None, gt=0, description="Wholesale price in cents")
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    row_number: Optional[int] = Field(None, description="Spreadsheet row as the merchant sees it (header is row 1)")

    @field_validator("description", "category")
    @classmethod
    def empty_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Blank optional text becomes None."""
        return v or None


@dataclass
class ImageAsset:
    """Raw image as received from the file picker."""
    id: str
    file_name: str
    content: bytes
    content_type: str
    clean_name: str
    is_secondary: bool = False
    preview_uri: str = ""

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class NormalizedImage:
    """Image ready for upload, compressed or passed through."""
    image_id: str
    file_name: str
    content: bytes
    content_type: str
    original_size: int
    compressed: bool = False
    compression_error: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.content)


# ===================
# MATCHING
# ===================

class ScoredCandidate(BaseSchema):
    """A product row scored against one image name."""
    row_index: int
    row: ProductRow
    score: float = Field(..., ge=0, le=1)
    method: MatchMethod
    similarity: float = Field(0.0, ge=0, le=1, description="Raw best fuzzy coefficient")


class MatchResult(BaseSchema):
    """One per primary image."""
    image_id: str
    file_name: str
    product_row: Optional[ProductRow] = None
    score: float = Field(0.0, ge=0, le=1)
    method: MatchMethod = MatchMethod.NONE
    secondary_image_ids: list[str] = Field(default_factory=list)
    candidates: list[ScoredCandidate] = Field(default_factory=list)

    @property
    def is_matched(self) -> bool:
        return self.product_row is not None


class ProductAssignment(BaseSchema):
    """Product-centric view of matching, what ingestion writes."""
    product_id: str
    sku: str
    status: AssignmentStatus
    image_id: Optional[str] = None
    secondary_image_ids: list[str] = Field(default_factory=list)
    method: MatchMethod = MatchMethod.NONE
    score: float = 0.0


class MatchStats(BaseSchema):
    """Counts for the matching table header."""
    total: int = 0
    matched: int = 0
    default: int = 0
    unmatched: int = 0
    with_secondary: int = 0


class MatchPreview(BaseSchema):
    """Matching output returned before anything is written."""
    results: list[MatchResult]
    assignments: list[ProductAssignment]
    stats: MatchStats


# ===================
# DUPLICATES
# ===================

class DuplicateRecord(BaseSchema):
    """A sheet SKU that already exists in the merchant's inventory."""
    sku: str
    exists_in_backend: bool = True
    conflicting_name: Optional[str] = None


# ===================
# PROGRESS
# ===================

class IngestionProgress(BaseSchema):
    """Upload-phase progress, read-only snapshot for the UI."""
    total: int = 0
    uploaded: int = 0
    failed: int = 0
    current_label: str = ""
    retrying: bool = False

    @property
    def is_complete(self) -> bool:
        return self.uploaded == self.total


class CompressionProgress(BaseSchema):
    """Compression-phase progress, one update per image."""
    total: int = 0
    current: int = 0
    file_name: str = ""
    percentage: int = 0


# ===================
# BATCH WRITES
# ===================

@dataclass(frozen=True)
class BatchOutcome:
    """Emitted once per batch."""
    batch_index: int
    succeeded_records: tuple = ()
    failure_reason: Optional[BaseException] = None
    record_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.failure_reason is None


@dataclass
class BatchFailure:
    """A batch whose persist call failed after retries."""
    batch_index: int
    error: BaseException
    records: list = field(default_factory=list)


@dataclass
class WriteResult:
    """Aggregate of all batches."""
    successful: list = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)
    outcomes: list[BatchOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_record_count(self) -> int:
        return sum(len(f.records) for f in self.failed)


# ===================
# REPORT
# ===================

class ItemFailure(BaseSchema):
    """A product that was not written, with the reason."""
    sku: str
    reason: str


class BatchFailureReport(BaseSchema):
    """Serializable view of a failed batch."""
    batch_index: int
    record_count: int
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class IngestionReport(BaseSchema):
    """Final result of a bulk ingestion run."""
    total_products: int
    uploaded: int = 0
    failed: int = 0
    skipped_duplicates: list[DuplicateRecord] = Field(default_factory=list)
    unmatched: list[ItemFailure] = Field(default_factory=list)
    image_failures: list[ItemFailure] = Field(default_factory=list)
    batch_failures: list[BatchFailureReport] = Field(default_factory=list)
    compressed_images: int = 0
    cancelled: bool = False
    progress: IngestionProgress = Field(default_factory=IngestionProgress)

    @property
    def success(self) -> bool:
        """True if every matched or default-image product was written with all its images."""
        return self.failed == 0 and not self.image_failures and not self.cancelled
