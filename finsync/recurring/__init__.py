"""Recurring transactions package."""

from finsync.recurring.engine import (
    MaterializedOccurrence,
    RecurringEngine,
    RecurringRunError,
    RecurringRunResult,
)
from finsync.recurring.schedule import next_occurrence, occurrence, occurrences_between
from finsync.recurring.scheduler import RecurringScheduler

__all__ = [
    "MaterializedOccurrence",
    "RecurringEngine",
    "RecurringRunError",
    "RecurringRunResult",
    "RecurringScheduler",
    "next_occurrence",
    "occurrence",
    "occurrences_between",
]
