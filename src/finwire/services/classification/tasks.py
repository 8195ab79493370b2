from __future__ import annotations

from typing import Any

from finwire.prompts.loader import load_finwire_prompt
from finwire.services.classification.types import (
    BudgetMatch,
    BudgetMatchResult,
    CategorizationResult,
    CategorizedTransaction,
    ClassifiableTransaction,
)

CATEGORIZE_PROMPT_KEY = "categorize-transactions"
BUDGET_FILTER_PROMPT_KEY = "budget-filter"

_NO_CUSTOM_RULES = "None."


class _PromptTemplate:
    """Lazily loaded prompt with a single instruction placeholder."""

    def __init__(self, prompt_key: str, placeholder: str, template: str | None) -> None:
        self._prompt_key = prompt_key
        self._placeholder = placeholder
        self._template = template

    def render(self, instruction: str) -> str:
        if self._template is None:
            self._template = load_finwire_prompt(self._prompt_key)
        return self._template.replace(self._placeholder, instruction)


def _base_fields(txn: ClassifiableTransaction) -> dict[str, object]:
    return {
        "date": txn.date,
        "description": txn.description,
        "amount": f"{txn.amount:.2f}",
        "category": txn.category,
        "account_name": txn.account_name,
        "pending": txn.pending,
    }


class CategorizationTask:
    """Assigns one spending category per transaction; custom rules win."""

    name = "categorize"

    def __init__(self, *, template: str | None = None) -> None:
        self._prompt = _PromptTemplate(
            CATEGORIZE_PROMPT_KEY, "{{CUSTOM_RULES}}", template
        )

    def render_system_prompt(self, instruction: str) -> str:
        return self._prompt.render(instruction.strip() or _NO_CUSTOM_RULES)

    def serialize_item(
        self, idx: int, item: ClassifiableTransaction
    ) -> dict[str, object]:
        return {"idx": idx, **_base_fields(item)}

    def build_result(
        self, raw: dict[str, Any], item: ClassifiableTransaction
    ) -> CategorizedTransaction:
        parsed = CategorizationResult.model_validate(raw)
        return CategorizedTransaction(
            txn=item, category=parsed.category.strip(), rationale=parsed.rationale
        )


class BudgetFilterTask:
    """Decides per transaction whether it belongs to one budget."""

    name = "budget-filter"

    def __init__(self, *, template: str | None = None) -> None:
        self._prompt = _PromptTemplate(
            BUDGET_FILTER_PROMPT_KEY, "{{BUDGET_FILTER}}", template
        )

    def render_system_prompt(self, instruction: str) -> str:
        if not instruction.strip():
            raise ValueError("Budget filter instruction must not be empty")
        return self._prompt.render(instruction.strip())

    def serialize_item(
        self, idx: int, item: ClassifiableTransaction
    ) -> dict[str, object]:
        return {"idx": idx, "id": item.transaction_id, **_base_fields(item)}

    def build_result(
        self, raw: dict[str, Any], item: ClassifiableTransaction
    ) -> BudgetMatch:
        parsed = BudgetMatchResult.model_validate(raw)
        return BudgetMatch(
            transaction_id=item.transaction_id,
            matches=parsed.matches,
            reason=parsed.reason,
        )
