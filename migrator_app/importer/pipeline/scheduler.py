"""
Batch scheduler and memory circuit breaker for per-file row imports.

Each file moves through ``IDLE -> RUNNING -> COMPLETED | ABORTED``. Rows are
consumed sequentially in fixed-size batches; between batches the scheduler
reclaims garbage, samples process memory, and pauses briefly. Crossing the
memory ceiling aborts the rest of the file with a single warning. An
oversized file is truncated to the row cap before the first row is read.
"""

from __future__ import annotations

import enum
import gc
import logging
import time
from dataclasses import dataclass
from itertools import islice
from typing import Any, Callable, Iterable, Mapping, Protocol, TypeVar

import psutil

from migrator_app.importer.metrics import record_circuit_breaker, record_memory_sample

from .loaders import RowOutcome
from .run_ledger import LARGE_DATASET, MEMORY_LIMIT, ImportRunLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")

BYTES_PER_MB = 1024 * 1024
SPLIT_HINT = "Split the export into smaller files and import the remaining rows separately."


class FileState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class MemorySampler(Protocol):
    """Source of the current process memory usage."""

    def memory_usage_bytes(self) -> int: ...


class PsutilMemorySampler:
    """Resident set size of the current process via psutil."""

    def __init__(self) -> None:
        self._process = psutil.Process()

    def memory_usage_bytes(self) -> int:
        return self._process.memory_info().rss


@dataclass(frozen=True)
class BatchPolicy:
    batch_size: int = 100
    pause_seconds: float = 0.1
    memory_ceiling_bytes: int = 1024 * BYTES_PER_MB
    max_rows_per_file: int = 50_000
    collect_garbage: bool = True

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "BatchPolicy":
        return cls(
            batch_size=max(1, int(config.get("IMPORTER_BATCH_SIZE", cls.batch_size))),
            pause_seconds=max(0.0, float(config.get("IMPORTER_BATCH_PAUSE_SECONDS", cls.pause_seconds))),
            memory_ceiling_bytes=int(config.get("IMPORTER_MEMORY_CEILING_MB", 1024)) * BYTES_PER_MB,
            max_rows_per_file=max(1, int(config.get("IMPORTER_MAX_ROWS_PER_FILE", cls.max_rows_per_file))),
        )


@dataclass
class FileOutcome:
    """Per-file tally produced by :meth:`BatchScheduler.run`."""

    file_name: str
    state: FileState = FileState.IDLE
    total_rows: int | None = None
    rows_attempted: int = 0
    created: int = 0
    duplicates: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    peak_memory_bytes: int = 0

    def tally(self, outcome: RowOutcome) -> None:
        self.rows_attempted += 1
        if outcome is RowOutcome.CREATED:
            self.created += 1
        elif outcome is RowOutcome.DUPLICATE:
            self.duplicates += 1
        else:
            self.failed += 1


class BatchScheduler:
    """Drive a row handler over a stream of rows under a :class:`BatchPolicy`."""

    def __init__(
        self,
        ledger: ImportRunLedger,
        *,
        policy: BatchPolicy | None = None,
        sampler: MemorySampler | None = None,
        sleep: Callable[[float], None] = time.sleep,
        collect: Callable[[], Any] = gc.collect,
    ) -> None:
        self.ledger = ledger
        self.policy = policy or BatchPolicy()
        self.sampler = sampler or PsutilMemorySampler()
        self._sleep = sleep
        self._collect = collect

    def run(
        self,
        rows: Iterable[T],
        handler: Callable[[T], RowOutcome],
        *,
        file_name: str,
        folder: str | None = None,
        total_rows: int | None = None,
    ) -> FileOutcome:
        outcome = FileOutcome(file_name=file_name, total_rows=total_rows)
        outcome.state = FileState.RUNNING
        policy = self.policy
        limit = total_rows

        if total_rows is not None and total_rows > policy.max_rows_per_file:
            limit = policy.max_rows_per_file
            dropped = total_rows - limit
            outcome.skipped += dropped
            self.ledger.record_skipped(dropped)
            self.ledger.record_warning(
                LARGE_DATASET,
                f"{file_name} has {total_rows} rows; only the first {limit} will be imported. {SPLIT_HINT}",
                file_name=file_name,
                folder_path=folder,
                details={"total_rows": total_rows, "row_cap": limit},
            )
            record_circuit_breaker("large_dataset")
            rows = islice(rows, limit)

        iterator = iter(rows)
        batch = list(islice(iterator, policy.batch_size))
        while batch:
            outcome.batches += 1
            for item in batch:
                self.ledger.record_processed(folder=folder)
                outcome.tally(handler(item))

            pending = list(islice(iterator, policy.batch_size))
            if not pending:
                break

            usage = self._sample_memory(outcome)
            if usage > policy.memory_ceiling_bytes:
                self._abort(outcome, usage=usage, limit=limit, pending=len(pending), folder=folder)
                return outcome

            if policy.pause_seconds:
                self._sleep(policy.pause_seconds)
            batch = pending

        outcome.state = FileState.COMPLETED
        logger.debug(
            "Finished %s: %s created, %s duplicates, %s failed",
            file_name,
            outcome.created,
            outcome.duplicates,
            outcome.failed,
            extra={"importer_run_id": self.ledger.run_id, "importer_file": file_name},
        )
        return outcome

    def _sample_memory(self, outcome: FileOutcome) -> int:
        if self.policy.collect_garbage:
            self._collect()
        usage = self.sampler.memory_usage_bytes()
        outcome.peak_memory_bytes = max(outcome.peak_memory_bytes, usage)
        record_memory_sample(usage)
        return usage

    def _abort(self, outcome: FileOutcome, *, usage: int, limit: int | None, pending: int, folder: str | None) -> None:
        outcome.state = FileState.ABORTED
        remaining = limit - outcome.rows_attempted if limit is not None else pending
        outcome.skipped += remaining
        self.ledger.record_skipped(remaining)
        self.ledger.record_warning(
            MEMORY_LIMIT,
            (
                f"Memory limit reached while importing {outcome.file_name}: stopped after "
                f"{outcome.rows_attempted} rows ({outcome.created} imported). {SPLIT_HINT}"
            ),
            file_name=outcome.file_name,
            folder_path=folder,
            details={
                "memory_mb": round(usage / BYTES_PER_MB, 1),
                "ceiling_mb": round(self.policy.memory_ceiling_bytes / BYTES_PER_MB, 1),
                "rows_attempted": outcome.rows_attempted,
                "rows_imported": outcome.created,
                "rows_skipped": remaining,
            },
        )
        record_circuit_breaker("memory_limit")
