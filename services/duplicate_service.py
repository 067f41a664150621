"""
Pre-flight duplicate SKU detection.

Checks all sheet SKUs against the merchant's existing inventory in a single
lookup. Rows are never modified; the caller decides to skip the duplicates
or cancel the whole run.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Optional, Sequence
import structlog

from exceptions import DuplicateLookupError, IngestionCancelledError
from models.bulk_upload import DuplicateRecord, ProductRow
from utils.retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)

ExistingSkuLookup = Callable[[list[str]], Awaitable[Mapping[str, str]]]


@dataclass
class DuplicateCheck:
    """
    Result of the pre-flight check plus the two ways to resolve it.

    Attributes:
        rows: Rows as parsed (never modified)
        duplicates: One record per row whose SKU already exists
    """
    rows: list[ProductRow]
    duplicates: list[DuplicateRecord] = field(default_factory=list)

    @property
    def has_duplicates(self) -> bool:
        return bool(self.duplicates)

    @property
    def duplicate_skus(self) -> set[str]:
        return {d.sku for d in self.duplicates}

    def continue_skipping_duplicates(self) -> list[ProductRow]:
        """Working set for batching: every row whose SKU is not a duplicate."""
        skus = self.duplicate_skus
        kept = [row for row in self.rows if row.sku not in skus]
        logger.info("duplicates_skipped", skipped=len(self.rows) - len(kept), kept=len(kept))
        return kept

    def cancel(self) -> None:
        """Abort ingestion before any batch is submitted."""
        logger.info("ingestion_cancelled_at_duplicates", duplicates=len(self.duplicates))
        raise IngestionCancelledError(sorted(self.duplicate_skus))


async def detect_duplicates(
    rows: Sequence[ProductRow],
    existing_sku_lookup: ExistingSkuLookup,
    retry_policy: Optional[RetryPolicy] = None,
) -> list[DuplicateRecord]:
    """
    Report rows whose SKU already exists in the backend.

    All SKUs go out in one lookup call, not one per row. When retry_policy
    is given the lookup runs through the retry controller.

    Args:
        rows: Parsed product rows
        existing_sku_lookup: async skus → {sku: existing product name}
        retry_policy: Optional backoff for the lookup call

    Returns:
        DuplicateRecord list in row order

    Raises:
        DuplicateLookupError: If the lookup fails (ingestion must not
                              proceed with unknown duplicates)
    """
    skus = list(dict.fromkeys(row.sku for row in rows))
    if not skus:
        return []

    logger.info("checking_duplicates", sku_count=len(skus))

    async def lookup() -> Mapping[str, str]:
        return await existing_sku_lookup(skus)

    try:
        if retry_policy is None:
            existing = await lookup()
        else:
            existing = await with_retry(
                lookup,
                retry_policy,
                on_retry=lambda attempt, error, delay: logger.warning(
                    "duplicate_lookup_retrying",
                    attempt=attempt,
                    delay_seconds=round(delay, 2),
                    error=str(error),
                ),
            )
    except Exception as e:
        logger.error(
            "duplicate_lookup_failed",
            sku_count=len(skus),
            error=str(e),
            error_type=type(e).__name__
        )
        raise DuplicateLookupError(len(skus), str(e)) from e

    duplicates = [
        DuplicateRecord(
            sku=row.sku,
            exists_in_backend=True,
            conflicting_name=existing[row.sku] or None,
        )
        for row in rows
        if row.sku in existing
    ]

    logger.info("duplicates_checked", sku_count=len(skus), duplicates=len(duplicates))

    return duplicates


async def check_duplicates(
    rows: Sequence[ProductRow],
    existing_sku_lookup: ExistingSkuLookup,
    retry_policy: Optional[RetryPolicy] = None,
) -> DuplicateCheck:
    """detect_duplicates wrapped with the skip/cancel resolution."""
    duplicates = await detect_duplicates(rows, existing_sku_lookup, retry_policy)
    return DuplicateCheck(rows=list(rows), duplicates=duplicates)
