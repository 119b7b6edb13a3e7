"""Bulk sync progress state and its derived rates.

A ProgressTracker owns one SyncProgressState for the lifetime of a sync and
recomputes percentage, speed and ETA after every processed record.
Subscribers always receive full snapshots, never diffs.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from src.crmsync.crm.schemas import SyncStatus, SyncType

MAX_REPORTED_ERRORS = 200


class ProgressEventType(str, Enum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_EVENTS = frozenset(
    {ProgressEventType.COMPLETE, ProgressEventType.ERROR, ProgressEventType.CANCELLED}
)


class RecordOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class SyncProgressState(BaseModel):
    """Snapshot of a running or finished bulk sync.

    Speed is in records per second and the ETA in seconds; both stay None
    until enough records have been processed to estimate them.
    """

    sync_id: str
    sync_type: SyncType = SyncType.FULL
    status: SyncStatus = SyncStatus.PROCESSING
    total_records: int | None = None
    processed_records: int = 0
    created_records: int = 0
    updated_records: int = 0
    skipped_records: int = 0
    failed_records: int = 0
    current_record_label: str | None = None
    percentage: int = 0
    processing_speed: float | None = None
    estimated_time_remaining: float | None = None
    rate_limited: bool = False
    rate_limit_hits: int = 0
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None


class ProgressEvent(BaseModel):
    type: ProgressEventType
    state: SyncProgressState
    message: str | None = None

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS


def compute_percentage(processed: int, total: int | None) -> int:
    """processed / total as a whole percentage; 0 when total is 0 or unknown."""
    if not total:
        return 0
    return min(100, round(processed / total * 100))


class ProgressTracker:
    """Mutates a SyncProgressState as records are processed.

    Args:
        sync_id: Identifier of the sync.
        sync_type: FULL or INCREMENTAL.
        clock: Monotonic clock in seconds.
        window: Number of recent records the rolling speed is computed over.
    """

    def __init__(
        self,
        sync_id: str,
        sync_type: SyncType = SyncType.FULL,
        clock: Callable[[], float] = time.monotonic,
        window: int = 25,
    ) -> None:
        self.state = SyncProgressState(sync_id=sync_id, sync_type=sync_type)
        self._clock = clock
        self._started = clock()
        self._recent: deque[float] = deque(maxlen=window)

    def set_total(self, total: int | None) -> None:
        self.state.total_records = total
        self._recompute()

    def record(self, label: str | None, outcome: RecordOutcome, error: str | None = None) -> None:
        state = self.state
        state.processed_records += 1
        state.current_record_label = label
        if outcome == RecordOutcome.CREATED:
            state.created_records += 1
        elif outcome == RecordOutcome.UPDATED:
            state.updated_records += 1
        elif outcome == RecordOutcome.SKIPPED:
            state.skipped_records += 1
        else:
            state.failed_records += 1
        if error:
            self.add_error(error)
        self._recent.append(self._clock())
        self._recompute()

    def add_error(self, message: str) -> None:
        if len(self.state.errors) < MAX_REPORTED_ERRORS:
            self.state.errors.append(message)

    def note_rate_limit(self, hits: int) -> None:
        if hits > 0:
            self.state.rate_limited = True
            self.state.rate_limit_hits += hits

    def finish(self, status: SyncStatus) -> None:
        state = self.state
        state.status = status
        state.completed_at = datetime.now(timezone.utc)
        state.current_record_label = None
        state.estimated_time_remaining = None
        if status == SyncStatus.COMPLETED:
            if state.total_records is None or state.total_records < state.processed_records:
                state.total_records = state.processed_records
            state.percentage = 100
            state.estimated_time_remaining = 0.0

    def snapshot(self) -> SyncProgressState:
        return self.state.model_copy(deep=True)

    def event(self, event_type: ProgressEventType, message: str | None = None) -> ProgressEvent:
        return ProgressEvent(type=event_type, state=self.snapshot(), message=message)

    def _speed(self) -> float | None:
        if len(self._recent) >= 2:
            span = self._recent[-1] - self._recent[0]
            if span > 0:
                return (len(self._recent) - 1) / span
        elapsed = self._clock() - self._started
        if self.state.processed_records and elapsed > 0:
            return self.state.processed_records / elapsed
        return None

    def _recompute(self) -> None:
        state = self.state
        state.percentage = compute_percentage(state.processed_records, state.total_records)
        speed = self._speed()
        state.processing_speed = round(speed, 2) if speed is not None else None
        if speed and state.total_records:
            remaining = max(state.total_records - state.processed_records, 0)
            state.estimated_time_remaining = round(remaining / speed, 1)
        else:
            state.estimated_time_remaining = None
