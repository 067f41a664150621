"""
Bulk upload orchestration.

Runs one merchant upload end to end:

    validate images → duplicate pre-flight → match images to rows →
    compress → upload images → build product records → batch insert

Everything before the batch insert is all-or-nothing (bad input, a failed
duplicate lookup or a cancel at the duplicate prompt stop the run before
anything is written). From the batch insert on, failures are per item and
end up in the IngestionReport.
"""

import asyncio
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence, Union
import structlog

from config import settings
from exceptions import BatchPersistError
from models.bulk_upload import (
    AssignmentStatus,
    BatchFailureReport,
    CompressionProgress,
    DuplicatePolicy,
    DuplicateRecord,
    ImageAsset,
    IngestionProgress,
    IngestionReport,
    ItemFailure,
    MatchPreview,
    NormalizedImage,
    ProductAssignment,
    ProductRow,
)
from services.batch_writer import BatchWriter
from services.catalog_store import SupabaseCatalogStore, get_catalog_store
from services.duplicate_service import DuplicateCheck, check_duplicates
from services.matching_service import match_images, match_stats, resolve_assignments
from services.media_service import (
    CompressionProgressTracker,
    MediaNormalizer,
    build_image_asset,
    load_image_assets,
    validate_images,
)
from services.progress_tracker import ProgressTracker
from utils.retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)

UNMATCHED_REASON = "No image assigned and default image not selected"

ImageInput = Union[tuple[str, bytes], str, Path]


class BulkUploadService:
    """
    Bulk product ingestion.

    Handles:
    - Match previews for the review screen
    - Duplicate SKU pre-flight
    - The full ingestion run with progress streams
    """

    def __init__(
        self,
        store: Optional[SupabaseCatalogStore] = None,
        normalizer: Optional[MediaNormalizer] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._store = store
        self.normalizer = normalizer or MediaNormalizer()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    @property
    def store(self) -> SupabaseCatalogStore:
        if self._store is None:
            self._store = get_catalog_store()
        return self._store

    # ===================
    # REVIEW
    # ===================

    def build_image_assets(self, files: Sequence[ImageInput]) -> list[ImageAsset]:
        """ImageAssets from (file_name, bytes) pairs or file paths, input order kept."""
        assets = []
        for item in files:
            if isinstance(item, tuple):
                file_name, content = item
                assets.append(build_image_asset(file_name, content))
            else:
                assets.extend(load_image_assets([item]))
        return assets

    def preview(
        self,
        rows: Sequence[ProductRow],
        images: Sequence[ImageAsset],
        overrides: Optional[Mapping[str, str]] = None,
    ) -> MatchPreview:
        """
        Match images to rows without writing anything.

        Called again after every manual override change.
        """
        results = match_images(images, rows, overrides)
        assignments = resolve_assignments(rows, results, overrides)
        return MatchPreview(
            results=results,
            assignments=assignments,
            stats=match_stats(assignments),
        )

    async def check_duplicates(
        self,
        rows: Sequence[ProductRow],
        merchant_id: Optional[str] = None,
    ) -> DuplicateCheck:
        """
        Duplicate pre-flight against the merchant's catalog.

        Raises:
            DuplicateLookupError: If the lookup fails after retries
        """
        async def lookup(skus: list[str]) -> dict[str, str]:
            return await asyncio.to_thread(self.store.lookup_existing_skus, skus, merchant_id)

        return await check_duplicates(rows, lookup, self.retry_policy)

    # ===================
    # INGESTION
    # ===================

    async def ingest(
        self,
        rows: Sequence[ProductRow],
        images: Sequence[ImageAsset],
        merchant_id: str,
        overrides: Optional[Mapping[str, str]] = None,
        on_duplicates: DuplicatePolicy = DuplicatePolicy.SKIP,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[Callable[[IngestionProgress], None]] = None,
        on_compression: Optional[Callable[[Optional[CompressionProgress]], None]] = None,
    ) -> IngestionReport:
        """
        Run a full ingestion.

        Args:
            rows: Parsed product rows
            images: Uploaded images
            merchant_id: Owner of the new products
            overrides: Manual pairings, product_id → image_id or "default"
            on_duplicates: Skip existing SKUs or cancel the run
            cancel_event: Set to stop scheduling batches (the batch in
                          flight still completes)
            on_progress: Upload progress stream
            on_compression: Compression progress stream

        Returns:
            IngestionReport

        Raises:
            ImageValidationError: If any image is rejected
            DuplicateLookupError: If the duplicate lookup fails
            IngestionCancelledError: If duplicates exist and policy is cancel
        """
        logger.info(
            "ingestion_started",
            merchant_id=merchant_id,
            products=len(rows),
            images=len(images),
            on_duplicates=on_duplicates.value
        )

        validate_images(images)

        skipped: list[DuplicateRecord] = []
        check = await self.check_duplicates(rows, merchant_id)
        working_rows = list(rows)
        if check.has_duplicates:
            if on_duplicates == DuplicatePolicy.CANCEL:
                check.cancel()
            working_rows = check.continue_skipping_duplicates()
            skipped = check.duplicates

        preview = self.preview(working_rows, images, overrides)
        unmatched = [
            ItemFailure(sku=a.sku, reason=UNMATCHED_REASON)
            for a in preview.assignments
            if a.status == AssignmentStatus.UNMATCHED
        ]

        pending = [a for a in preview.assignments if a.status != AssignmentStatus.UNMATCHED]

        if cancel_event is not None and cancel_event.is_set():
            logger.info("ingestion_cancelled_before_upload", merchant_id=merchant_id, pending=len(pending))
            return IngestionReport(
                total_products=len(rows),
                skipped_duplicates=skipped,
                unmatched=unmatched,
                cancelled=True,
                progress=ProgressTracker(len(pending)).snapshot(),
            )

        image_urls, image_failures, compressed = await self._upload_images(
            preview.assignments, images, merchant_id, on_compression
        )

        rows_by_id = {row.id: row for row in working_rows}
        records = []
        dropped = 0
        for assignment in pending:
            if assignment.status == AssignmentStatus.MATCHED and assignment.image_id not in image_urls:
                dropped += 1
                continue
            records.append(self._build_record(
                rows_by_id[assignment.product_id], assignment, image_urls, merchant_id
            ))

        # Products dropped for a failed image upload count as failed records
        tracker = ProgressTracker(len(pending), on_progress)
        if dropped:
            tracker.record_failure(dropped)
        writer = BatchWriter(
            retry_policy=self.retry_policy,
            tracker=tracker,
            resubmit_failed=settings.resubmit_failed_batches,
        )

        async def persist(batch: list[dict]) -> list[dict]:
            return await asyncio.to_thread(self.store.persist_batch, batch)

        result = await writer.write_all(
            records,
            persist,
            batch_size=settings.ingestion_batch_size,
            should_continue=(lambda: not cancel_event.is_set()) if cancel_event else None,
        )

        batch_failures = []
        for failure in result.failed:
            error = BatchPersistError(failure.batch_index, len(failure.records), failure.error)
            batch_failures.append(BatchFailureReport(
                batch_index=failure.batch_index,
                record_count=len(failure.records),
                code=error.code,
                message=error.message,
                details=error.details,
            ))

        report = IngestionReport(
            total_products=len(rows),
            uploaded=tracker.uploaded,
            failed=tracker.failed,
            skipped_duplicates=skipped,
            unmatched=unmatched,
            image_failures=image_failures,
            batch_failures=batch_failures,
            compressed_images=compressed,
            cancelled=result.cancelled,
            progress=tracker.snapshot(),
        )

        logger.info(
            "ingestion_completed",
            merchant_id=merchant_id,
            uploaded=report.uploaded,
            failed=report.failed,
            skipped=len(skipped),
            unmatched=len(unmatched),
            image_failures=len(image_failures),
            cancelled=report.cancelled
        )

        return report

    # ===================
    # HELPERS
    # ===================

    async def _upload_images(
        self,
        assignments: Sequence[ProductAssignment],
        images: Sequence[ImageAsset],
        merchant_id: str,
        on_compression: Optional[Callable[[Optional[CompressionProgress]], None]],
    ) -> tuple[dict[str, str], list[ItemFailure], int]:
        """
        Compress and upload every image a matched product uses.

        Returns:
            ({image_id: public URL}, failures, compressed count)
        """
        owner_sku: dict[str, str] = {}
        for assignment in assignments:
            if assignment.status != AssignmentStatus.MATCHED:
                continue
            for image_id in [assignment.image_id, *assignment.secondary_image_ids]:
                owner_sku[image_id] = assignment.sku

        needed = [image for image in images if image.id in owner_sku]
        normalized = await self.normalizer.normalize_all(
            needed, CompressionProgressTracker(on_compression)
        )

        urls: dict[str, str] = {}
        failures: list[ItemFailure] = []
        for image in normalized:
            try:
                urls[image.image_id] = await self._upload_one(image, merchant_id)
            except Exception as e:
                logger.error(
                    "image_upload_failed",
                    file_name=image.file_name,
                    sku=owner_sku[image.image_id],
                    error=str(e),
                    error_type=type(e).__name__
                )
                failures.append(ItemFailure(
                    sku=owner_sku[image.image_id],
                    reason=f"Image upload failed for {image.file_name}: {e}",
                ))

        return urls, failures, sum(1 for n in normalized if n.compressed)

    async def _upload_one(self, image: NormalizedImage, merchant_id: str) -> str:
        async def upload() -> str:
            return await asyncio.to_thread(self.store.upload_image, image, merchant_id)

        return await with_retry(
            upload,
            self.retry_policy,
            on_retry=lambda attempt, error, delay: logger.warning(
                "image_upload_retrying",
                file_name=image.file_name,
                attempt=attempt,
                delay_seconds=round(delay, 2),
                error=str(error)
            ),
        )

    def _build_record(
        self,
        row: ProductRow,
        assignment: ProductAssignment,
        image_urls: Mapping[str, str],
        merchant_id: str,
    ) -> dict:
        """Products table row. Default-image products get the placeholder URL."""
        if assignment.status == AssignmentStatus.MATCHED:
            image_url = image_urls[assignment.image_id]
            secondary_urls = [
                image_urls[image_id]
                for image_id in assignment.secondary_image_ids
                if image_id in image_urls
            ]
        else:
            image_url = settings.placeholder_image_url
            secondary_urls = []

        return {
            "id": row.id,
            "user_id": merchant_id,
            "sku": row.sku,
            "name": row.name,
            "price_retail": row.price,
            "price_wholesale": row.wholesale_price,
            "description": row.description,
            "category": row.category,
            "tags": row.tags,
            "original_image_url": image_url,
            "thumbnail_image_url": image_url,
            "catalog_image_url": image_url,
            "secondary_image_urls": secondary_urls,
            "processing_status": "completed",
        }


# Singleton instance for convenience
_bulk_upload_service: Optional[BulkUploadService] = None


def get_bulk_upload_service() -> BulkUploadService:
    """Get or create BulkUploadService instance."""
    global _bulk_upload_service
    if _bulk_upload_service is None:
        _bulk_upload_service = BulkUploadService()
    return _bulk_upload_service
