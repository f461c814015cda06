"""Queries package."""

from finsync.queries.budgets import (
    BudgetLine,
    BudgetQueries,
    BudgetSummary,
    QueryError,
)

__all__ = ["BudgetLine", "BudgetQueries", "BudgetSummary", "QueryError"]
