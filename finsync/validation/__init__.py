"""Validation package."""

from finsync.validation.validator import (
    LedgerValidator,
    RecordValidationError,
    build_record,
    issues_from_pydantic,
    summarize,
)

__all__ = [
    "LedgerValidator",
    "RecordValidationError",
    "build_record",
    "issues_from_pydantic",
    "summarize",
]
