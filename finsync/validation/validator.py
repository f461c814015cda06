"""
Ledger Validation

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- Types, required fields, positive amounts, transfer endpoints
- Done by the pydantic models themselves; failures are translated
  into ValidationIssues here

STAGE 2 - REFERENCE VALIDATION:
- Referenced accounts and categories exist and are active
- Category types match the transaction type
- Category tree stays two levels deep
- This needs the record store

IMPORTANT: Validation NEVER silently fixes issues. A failed check raises
RecordValidationError before anything is persisted.
"""

from typing import Any, Optional

from pydantic import ValidationError

from finsync.models.records import (
    Budget,
    Category,
    CategoryType,
    RecordModel,
    RecurringTransaction,
    Transaction,
    TransactionType,
)
from finsync.models.validation import ValidationIssue, ValidationResult
from finsync.services.storage import RecordStore


class RecordValidationError(ValueError):
    """A record was rejected before persistence."""

    def __init__(self, table: str, issues: list[ValidationIssue]):
        self.table = table
        self.issues = issues
        summary = "; ".join(issue.message for issue in issues if issue.severity == "error")
        super().__init__(f"Invalid {table}: {summary}")


def issues_from_pydantic(error: ValidationError) -> list[ValidationIssue]:
    """Translate a pydantic ValidationError into ValidationIssues."""
    issues = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "record"
        issues.append(ValidationIssue(
            field=location,
            issue_type=item.get("type", "invalid_value"),
            message=item.get("msg", "Invalid value"),
        ))
    return issues


def build_record(model: type[RecordModel], table: str, data: dict[str, Any]) -> RecordModel:
    """
    Construct a model, turning schema failures into RecordValidationError.

    Raises:
        RecordValidationError: If the data violates the model's schema
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise RecordValidationError(table, issues_from_pydantic(e)) from e


class LedgerValidator:
    """
    Reference checks for records about to be written to the store.

    Each validate_* method returns a ValidationResult; the check_*
    variants raise RecordValidationError when there are errors.
    """

    def __init__(self, store: RecordStore):
        self._store = store

    async def _check_account(
        self,
        account_id: Optional[int],
        field: str,
        issues: list[ValidationIssue],
    ) -> None:
        if account_id is None:
            issues.append(ValidationIssue(
                field=field,
                issue_type="missing",
                message="An account is required",
            ))
            return
        account = await self._store.accounts.get(account_id)
        if account is None:
            issues.append(ValidationIssue(
                field=field,
                issue_type="not_found",
                message=f"Account #{account_id} does not exist",
            ))
        elif not account.is_active:
            issues.append(ValidationIssue(
                field=field,
                issue_type="inactive",
                message=f"Account '{account.name}' is closed",
                suggested_fix="Reactivate the account or pick another one",
            ))

    async def _check_category(
        self,
        category_id: Optional[int],
        txn_type: TransactionType,
        issues: list[ValidationIssue],
    ) -> None:
        if category_id is None:
            issues.append(ValidationIssue(
                field="category_id",
                issue_type="missing",
                message=f"A category is required for {txn_type.value} transactions",
            ))
            return
        category = await self._store.categories.get(category_id)
        if category is None:
            issues.append(ValidationIssue(
                field="category_id",
                issue_type="not_found",
                message=f"Category #{category_id} does not exist",
            ))
            return
        if not category.is_active:
            issues.append(ValidationIssue(
                field="category_id",
                issue_type="inactive",
                message=f"Category '{category.name}' has been deleted",
            ))
        if category.type.value != txn_type.value:
            issues.append(ValidationIssue(
                field="category_id",
                issue_type="type_mismatch",
                message=(
                    f"Category '{category.name}' is an {category.type.value} category "
                    f"but the transaction is {txn_type.value}"
                ),
                severity="warning",
            ))

    async def validate_transaction(self, transaction: Transaction) -> ValidationResult:
        issues: list[ValidationIssue] = []

        await self._check_account(transaction.account_id, "account_id", issues)

        if transaction.type == TransactionType.TRANSFER:
            await self._check_account(transaction.to_account_id, "to_account_id", issues)
            if transaction.to_account_id == transaction.account_id:
                issues.append(ValidationIssue(
                    field="to_account_id",
                    issue_type="invalid_value",
                    message="Cannot transfer to the same account",
                ))
        else:
            await self._check_category(transaction.category_id, transaction.type, issues)

        return ValidationResult(table="transactions", issues=issues)

    async def validate_recurring(self, template: RecurringTransaction) -> ValidationResult:
        issues: list[ValidationIssue] = []

        if template.type == TransactionType.TRANSFER:
            issues.append(ValidationIssue(
                field="type",
                issue_type="invalid_value",
                message="Recurring transactions cannot be transfers",
            ))
        await self._check_account(template.account_id, "account_id", issues)
        await self._check_category(template.category_id, template.type, issues)
        if template.end_date and template.end_date < template.start_date:
            issues.append(ValidationIssue(
                field="end_date",
                issue_type="inconsistent",
                message="End date is before start date",
            ))

        return ValidationResult(table="recurringTransactions", issues=issues)

    async def validate_category(self, category: Category) -> ValidationResult:
        """
        Enforce the two-level category tree.

        A parent must exist, share the child's type, and have no parent
        of its own. A category that already has children cannot become
        a child itself.
        """
        issues: list[ValidationIssue] = []

        if category.parent_category_id is not None:
            parent = await self._store.categories.get(category.parent_category_id)
            if parent is None:
                issues.append(ValidationIssue(
                    field="parent_category_id",
                    issue_type="not_found",
                    message=f"Parent category #{category.parent_category_id} does not exist",
                ))
            else:
                if parent.parent_category_id is not None:
                    issues.append(ValidationIssue(
                        field="parent_category_id",
                        issue_type="too_deep",
                        message=f"'{parent.name}' is already a subcategory and cannot have children",
                        suggested_fix="Pick a top-level category as the parent",
                    ))
                if parent.type != category.type:
                    issues.append(ValidationIssue(
                        field="parent_category_id",
                        issue_type="type_mismatch",
                        message=f"Parent '{parent.name}' is a {parent.type.value} category",
                    ))
                if category.id is not None and parent.id == category.id:
                    issues.append(ValidationIssue(
                        field="parent_category_id",
                        issue_type="invalid_value",
                        message="A category cannot be its own parent",
                    ))

            if category.id is not None:
                children = await self._store.categories.where(parent_category_id=category.id)
                if children:
                    issues.append(ValidationIssue(
                        field="parent_category_id",
                        issue_type="too_deep",
                        message=f"'{category.name}' has subcategories and cannot become one",
                    ))

        return ValidationResult(table="categories", issues=issues)

    async def validate_budget(self, budget: Budget) -> ValidationResult:
        issues: list[ValidationIssue] = []

        category = await self._store.categories.get(budget.category_id)
        if category is None:
            issues.append(ValidationIssue(
                field="category_id",
                issue_type="not_found",
                message=f"Category #{budget.category_id} does not exist",
            ))
        elif category.type != CategoryType.EXPENSE:
            issues.append(ValidationIssue(
                field="category_id",
                issue_type="type_mismatch",
                message=f"Budgets apply to expense categories, '{category.name}' is income",
            ))
        else:
            duplicates = [
                existing for existing in await self._store.budgets.where(
                    category_id=budget.category_id, month=budget.month
                )
                if existing.id != budget.id
            ]
            if duplicates:
                issues.append(ValidationIssue(
                    field="month",
                    issue_type="duplicate",
                    message=f"'{category.name}' already has a budget for {budget.month}",
                ))

        return ValidationResult(table="budgets", issues=issues)

    @staticmethod
    def raise_for(result: ValidationResult) -> None:
        if result.has_errors:
            raise RecordValidationError(result.table, result.issues)

    async def check_transaction(self, transaction: Transaction) -> None:
        self.raise_for(await self.validate_transaction(transaction))

    async def check_recurring(self, template: RecurringTransaction) -> None:
        self.raise_for(await self.validate_recurring(template))

    async def check_category(self, category: Category) -> None:
        self.raise_for(await self.validate_category(category))

    async def check_budget(self, budget: Budget) -> None:
        self.raise_for(await self.validate_budget(budget))


def summarize(result: ValidationResult) -> str:
    """
    User-friendly summary of a validation result.
    """
    if result.is_valid and not result.warnings:
        return "All checks passed."

    lines = []
    if result.has_errors:
        lines.append("Please fix the following:")
        for issue in result.issues:
            if issue.severity == "error":
                lines.append(f"   - {issue.message}")
                if issue.suggested_fix:
                    lines.append(f"     {issue.suggested_fix}")
    if result.warnings:
        lines.append("Please verify the following:")
        for warning in result.warnings:
            lines.append(f"   - {warning}")
    return "\n".join(lines)
