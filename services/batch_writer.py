"""
Batched, failure-isolated persistence.

Splits records into fixed-size, order-preserving batches and persists them
one after another. Each batch goes through the retry controller; a batch
that still fails is recorded and the writer moves on to the next one.
Batches never run concurrently.
"""

from typing import Awaitable, Callable, Optional, Sequence, TypeVar
import structlog

from models.bulk_upload import BatchFailure, BatchOutcome, WriteResult
from services.progress_tracker import ProgressTracker
from utils.retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 500

PersistBatch = Callable[[list], Awaitable[list]]


def chunk_records(records: Sequence[T], size: int) -> list[list[T]]:
    """
    Contiguous batches of at most size records, input order preserved.

    1234 records at size 500 → [500, 500, 234].
    """
    if size < 1:
        raise ValueError("batch size must be >= 1")
    return [list(records[i:i + size]) for i in range(0, len(records), size)]


class BatchWriter:
    """
    Sequential batch writer with per-batch retry and failure isolation.

    Usage:
        writer = BatchWriter(retry_policy=RetryPolicy(), tracker=tracker)
        result = await writer.write_all(rows, persist_batch, batch_size=500)
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        tracker: Optional[ProgressTracker] = None,
        resubmit_failed: bool = False,
        label: Callable[[int, int], str] = lambda index, count: f"Lote {index + 1} de {count}",
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.tracker = tracker
        self.resubmit_failed = resubmit_failed
        self.label = label

    async def write_all(
        self,
        records: Sequence[T],
        persist: PersistBatch,
        batch_size: int = DEFAULT_BATCH_SIZE,
        on_batch: Optional[Callable[[BatchOutcome, WriteResult], None]] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> WriteResult:
        """
        Persist every batch and aggregate the outcomes.

        Args:
            records: Records to write, in order
            persist: async batch → persisted records; one network request
            batch_size: Records per batch
            on_batch: Called after every batch, success or failure, with the
                      outcome and the running result
            should_continue: Checked before every batch, the first included;
                             returning False stops scheduling (the batch
                             in flight is never interrupted)

        Returns:
            WriteResult with successful records in batch order and one
            BatchFailure (zero-based index, original error) per failed batch
        """
        batches = chunk_records(records, batch_size)
        result = WriteResult()

        logger.info(
            "batch_write_started",
            records=len(records),
            batches=len(batches),
            batch_size=batch_size
        )

        for index, batch in enumerate(batches):
            if should_continue is not None and not should_continue():
                result.cancelled = True
                logger.info(
                    "batch_write_cancelled",
                    completed_batches=index,
                    remaining_batches=len(batches) - index
                )
                break

            outcome = await self._write_batch(index, len(batches), batch, persist, result)
            if on_batch:
                on_batch(outcome, result)

        if self.resubmit_failed and result.failed and not result.cancelled:
            await self._resubmit(persist, result, on_batch)

        logger.info(
            "batch_write_completed",
            successful=len(result.successful),
            failed_batches=len(result.failed),
            failed_records=result.failed_record_count,
            cancelled=result.cancelled
        )

        return result

    def _retry_hook(self, index: int) -> Callable[[int, BaseException, float], None]:
        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "batch_persist_retrying",
                batch_index=index,
                attempt=attempt,
                delay_seconds=round(delay, 2),
                error=str(error),
                error_type=type(error).__name__
            )
            if self.tracker:
                self.tracker.set_retrying(True)

        return on_retry

    async def _write_batch(
        self,
        index: int,
        batch_count: int,
        batch: list,
        persist: PersistBatch,
        result: WriteResult,
    ) -> BatchOutcome:
        if self.tracker:
            self.tracker.set_current(self.label(index, batch_count))

        try:
            persisted = await with_retry(lambda: persist(batch), self.retry_policy, on_retry=self._retry_hook(index))
        except Exception as e:
            logger.error(
                "batch_persist_failed",
                batch_index=index,
                records=len(batch),
                error=str(e),
                error_type=type(e).__name__
            )
            result.failed.append(BatchFailure(batch_index=index, error=e, records=batch))
            outcome = BatchOutcome(batch_index=index, failure_reason=e, record_count=len(batch))
            if self.tracker:
                self.tracker.set_retrying(False)
                self.tracker.record_failure(len(batch))
        else:
            # Backends that return nothing on insert still wrote the batch
            written = list(persisted) if persisted else list(batch)
            result.successful.extend(written)
            outcome = BatchOutcome(
                batch_index=index,
                succeeded_records=tuple(written),
                record_count=len(batch),
            )
            logger.debug("batch_persisted", batch_index=index, records=len(batch))
            if self.tracker:
                self.tracker.set_retrying(False)
                self.tracker.record_success(len(batch))

        result.outcomes.append(outcome)
        return outcome

    async def _resubmit(
        self,
        persist: PersistBatch,
        result: WriteResult,
        on_batch: Optional[Callable[[BatchOutcome, WriteResult], None]],
    ) -> None:
        """
        One more pass over failed batches, after every other batch ran.

        Only used when resubmit_failed is set. Recovered batches move from
        failed to successful; their progress is rebalanced accordingly.
        Every resubmitted batch emits a second outcome.
        """
        failures, result.failed = result.failed, []
        logger.info("resubmitting_failed_batches", batches=len(failures))

        for failure in failures:
            if self.tracker:
                self.tracker.set_current(f"Reintento lote {failure.batch_index + 1}")
            try:
                persisted = await with_retry(
                    lambda: persist(failure.records),
                    self.retry_policy,
                    on_retry=self._retry_hook(failure.batch_index),
                )
            except Exception as e:
                logger.error(
                    "batch_resubmit_failed",
                    batch_index=failure.batch_index,
                    error=str(e),
                    error_type=type(e).__name__
                )
                result.failed.append(BatchFailure(
                    batch_index=failure.batch_index,
                    error=e,
                    records=failure.records
                ))
                outcome = BatchOutcome(
                    batch_index=failure.batch_index,
                    failure_reason=e,
                    record_count=len(failure.records),
                )
                if self.tracker:
                    self.tracker.set_retrying(False)
            else:
                written = list(persisted) if persisted else list(failure.records)
                result.successful.extend(written)
                outcome = BatchOutcome(
                    batch_index=failure.batch_index,
                    succeeded_records=tuple(written),
                    record_count=len(failure.records),
                )
                if self.tracker:
                    self.tracker.set_retrying(False)
                    self.tracker.reclassify_failure_as_success(len(failure.records))

            result.outcomes.append(outcome)
            if on_batch:
                on_batch(outcome, result)
