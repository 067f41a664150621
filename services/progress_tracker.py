"""
Upload-phase progress tracking.

Owns the IngestionProgress counters for one ingestion run. Only the batch
writer's callbacks mutate it; the UI layer reads snapshots.
"""

from typing import Callable, Optional

from models.bulk_upload import IngestionProgress

ProgressListener = Callable[[IngestionProgress], None]


class ProgressTracker:
    """
    Running totals for uploaded/failed records.

    Keeps uploaded + failed <= total at all times; an update that would
    break it raises ValueError and leaves the counters untouched.
    """

    def __init__(self, total: int, listener: Optional[ProgressListener] = None):
        if total < 0:
            raise ValueError("total must be >= 0")
        self._total = total
        self._uploaded = 0
        self._failed = 0
        self._current_label = ""
        self._retrying = False
        self._listeners: list[ProgressListener] = [listener] if listener else []

    # ===================
    # MUTATIONS
    # ===================

    def record_success(self, n: int = 1) -> None:
        self._check_room(n)
        self._uploaded += n
        self._notify()

    def record_failure(self, n: int = 1) -> None:
        self._check_room(n)
        self._failed += n
        self._notify()

    def reclassify_failure_as_success(self, n: int = 1) -> None:
        """Move n records from failed to uploaded after a resubmitted batch lands."""
        if n < 0 or n > self._failed:
            raise ValueError(f"cannot reclassify {n} of {self._failed} failed records")
        self._failed -= n
        self._uploaded += n
        self._notify()

    def set_current(self, label: str) -> None:
        self._current_label = label
        self._notify()

    def set_retrying(self, retrying: bool) -> None:
        if self._retrying == retrying:
            return
        self._retrying = retrying
        self._notify()

    def subscribe(self, listener: ProgressListener) -> None:
        """Register a read-only observer, called after every change."""
        self._listeners.append(listener)

    # ===================
    # READS
    # ===================

    @property
    def total(self) -> int:
        return self._total

    @property
    def uploaded(self) -> int:
        return self._uploaded

    @property
    def failed(self) -> int:
        return self._failed

    @property
    def is_complete(self) -> bool:
        return self._uploaded == self._total

    def snapshot(self) -> IngestionProgress:
        """Immutable copy of the current state."""
        return IngestionProgress(
            total=self._total,
            uploaded=self._uploaded,
            failed=self._failed,
            current_label=self._current_label,
            retrying=self._retrying,
        )

    # ===================
    # HELPERS
    # ===================

    def _check_room(self, n: int) -> None:
        if n < 0:
            raise ValueError("count must be >= 0")
        if self._uploaded + self._failed + n > self._total:
            raise ValueError(
                f"progress overflow: {self._uploaded} uploaded + {self._failed} failed + {n} > {self._total}"
            )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in self._listeners:
            listener(snapshot)
