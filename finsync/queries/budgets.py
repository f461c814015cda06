"""
Budget Queries

DESIGN DECISION: Spending is always computed from transactions.
Budget.spent is only a cache for the mirror and other devices; every
number returned here comes from the transaction table.

Rules:
- Only active expense transactions count
- A month is the transaction's calendar month (YYYY-MM)
- Spending in a subcategory counts towards its parent
- The allocation for a month is the Budget row if one exists, otherwise
  the category's monthly_budget
"""

import re
from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel, Field

from finsync.models.records import (
    MONTH_PATTERN,
    Budget,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
    month_key,
)
from finsync.services.storage import RecordStore


class QueryError(Exception):
    """Error during a budget query."""
    pass


class BudgetLine(BaseModel):
    """One category's budget for a month."""

    category_id: int
    name: str
    budget: Decimal = Decimal("0")
    spent: Decimal = Decimal("0")

    @property
    def remaining(self) -> Decimal:
        return self.budget - self.spent

    @property
    def percentage(self) -> Decimal:
        return _percentage(self.spent, self.budget)

    @property
    def over_budget(self) -> bool:
        return self.budget > 0 and self.spent > self.budget


class BudgetSummary(BaseModel):
    """All expense categories for a month, with totals."""

    month: str
    lines: list[BudgetLine] = Field(default_factory=list)

    @property
    def total_budget(self) -> Decimal:
        return sum((line.budget for line in self.lines), Decimal("0"))

    @property
    def total_spent(self) -> Decimal:
        return sum((line.spent for line in self.lines), Decimal("0"))

    @property
    def overall_percentage(self) -> Decimal:
        return _percentage(self.total_spent, self.total_budget)


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= 0:
        return Decimal("0")
    return (part / whole * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)


def _check_month(month: str) -> None:
    if not isinstance(month, str) or not re.fullmatch(MONTH_PATTERN, month):
        raise QueryError(f"Month must look like YYYY-MM, got {month!r}")


class BudgetQueries:
    """
    Read-side budget figures over the record store.
    """

    def __init__(self, store: RecordStore):
        self._store = store

    async def _roll_up_map(self) -> dict[int, int]:
        """category id -> the top-level category it counts towards."""
        categories = await self._store.categories.all()
        return {
            c.id: c.parent_category_id if c.parent_category_id is not None else c.id
            for c in categories
        }

    async def _spending_by_category(self, month: str) -> dict[int, Decimal]:
        roll_up = await self._roll_up_map()
        spending: dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
        transactions: list[Transaction] = await self._store.transactions.where(
            type=TransactionType.EXPENSE, is_active=True
        )
        for txn in transactions:
            if month_key(txn.date) != month or txn.category_id is None:
                continue
            spending[roll_up.get(txn.category_id, txn.category_id)] += txn.amount
        return spending

    async def spent_for(self, category_id: int, month: str) -> Decimal:
        """
        Authoritative spend for a category in a month.

        For a subcategory only its own transactions count; for a
        top-level category its subcategories are included.
        """
        _check_month(month)
        category = await self._store.categories.get(category_id)
        if category is None:
            raise QueryError(f"Category #{category_id} does not exist")

        if category.parent_category_id is not None:
            ids = {category_id}
        else:
            children = await self._store.categories.where(parent_category_id=category_id)
            ids = {category_id} | {child.id for child in children}

        total = Decimal("0")
        for txn in await self._store.transactions.where(type=TransactionType.EXPENSE, is_active=True):
            if txn.category_id in ids and month_key(txn.date) == month:
                total += txn.amount
        return total

    async def refresh_spent(self, month: str) -> list[Budget]:
        """Rewrite the spent cache of every budget row for the month."""
        _check_month(month)
        refreshed = []
        for budget in await self._store.budgets.where(month=month):
            spent = await self.spent_for(budget.category_id, month)
            if spent != budget.spent:
                budget = await self._store.budgets.update(budget.id, spent=spent)
            refreshed.append(budget)
        return refreshed

    async def budget_for(self, category: Category, month: str) -> Optional[Decimal]:
        rows = await self._store.budgets.where(category_id=category.id, month=month)
        if rows:
            return rows[0].amount
        return category.monthly_budget

    async def monthly_summary(self, month: str) -> BudgetSummary:
        """
        Budget vs. spending for every active top-level expense category.
        """
        _check_month(month)
        spending = await self._spending_by_category(month)
        categories = await self._store.categories.where(
            type=CategoryType.EXPENSE, is_active=True, parent_category_id=None
        )

        summary = BudgetSummary(month=month)
        for category in categories:
            budget = await self.budget_for(category, month)
            summary.lines.append(BudgetLine(
                category_id=category.id,
                name=category.name,
                budget=budget or Decimal("0"),
                spent=spending.get(category.id, Decimal("0")),
            ))
        return summary
