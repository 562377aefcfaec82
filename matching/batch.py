"""
Sequential batch driver
Runs one handler per record with a fixed delay between calls, counting
outcomes and continuing past single-record failures.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from data_sources.error_handling import ParkTrackError
from logging_config import get_logger, log_error

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class BatchSummary:
    """Counts for one batch run."""
    label: str = "batch"
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: Counter = field(default_factory=Counter)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, outcome: Optional[str]) -> None:
        self.total += 1
        if outcome is None:
            self.skipped += 1
            return
        self.succeeded += 1
        self.outcomes[outcome] += 1

    def record_failure(self, item_label: str, error: Exception) -> None:
        self.total += 1
        self.failed += 1
        self.errors.append({"item": item_label, "error_type": type(error).__name__, "message": str(error)})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "outcomes": dict(self.outcomes),
            "errors": list(self.errors),
        }

    def log(self) -> None:
        outcome_text = ", ".join(f"{k}={v}" for k, v in sorted(self.outcomes.items())) or "none"
        logger.info(
            f"{self.label}: {self.total} processed, {self.succeeded} succeeded, "
            f"{self.failed} failed, {self.skipped} skipped ({outcome_text})",
            extra={"operation": self.label},
        )


def run_sequential(items: Iterable[T],
                   handler: Callable[[T], Optional[str]],
                   delay_s: float = 0.0,
                   label: str = "batch",
                   describe: Callable[[T], str] = str,
                   sleep: Callable[[float], None] = time.sleep) -> BatchSummary:
    """
    Call handler for each item in order.

    handler returns an outcome name, or None when the item was skipped. A
    raised exception is logged and counted as a failure; the run continues.
    The delay is applied between calls, not after the last one.

    Args:
        items: Records to process
        handler: Per-record function
        delay_s: Pause between records in seconds
        label: Name used in log lines and the summary
        describe: Produces a short label for a record in logs
        sleep: Sleep function, injectable for tests

    Returns:
        BatchSummary with per-outcome counts
    """
    summary = BatchSummary(label=label)
    records = list(items)

    for i, item in enumerate(records):
        item_label = describe(item)
        logger.debug(f"[{i + 1}/{len(records)}] {label}: {item_label}")
        try:
            outcome = handler(item)
        except ParkTrackError as e:
            log_error(logger, type(e).__name__, f"{label}: {item_label} failed: {e}")
            summary.record_failure(item_label, e)
        except Exception as e:
            logger.exception(f"{label}: unexpected error on {item_label}",
                             extra={"error_type": type(e).__name__})
            summary.record_failure(item_label, e)
        else:
            summary.record(outcome)

        if delay_s and i < len(records) - 1:
            sleep(delay_s)

    summary.log()
    return summary
