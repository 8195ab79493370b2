from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from finwire.adapters.clients.plaid import PlaidTransaction
    from finwire.adapters.db.models import Transaction


@dataclass(frozen=True)
class ClassifiableTransaction:
    """The transaction fields shown to the classifier."""

    transaction_id: str
    date: str
    description: str
    amount: float
    category: str | None = None
    account_name: str | None = None
    pending: bool = False

    @classmethod
    def from_plaid(
        cls, txn: PlaidTransaction, *, account_name: str | None = None
    ) -> ClassifiableTransaction:
        pfc = txn.get("personal_finance_category") or {}
        return cls(
            transaction_id=txn["transaction_id"],
            date=txn["date"],
            description=txn["name"],
            amount=float(txn["amount"]),
            category=pfc.get("primary"),
            account_name=account_name,
            pending=bool(txn.get("pending", False)),
        )

    @classmethod
    def from_row(
        cls, row: Transaction, *, prefer_custom: bool = True
    ) -> ClassifiableTransaction:
        category = row.plaid_category
        if prefer_custom and row.custom_category:
            category = row.custom_category
        return cls(
            transaction_id=row.external_id,
            date=row.posted_at.isoformat(),
            description=row.name,
            amount=float(row.amount),
            category=category,
            account_name=row.account_name,
            pending=row.pending,
        )


class CategorizationResult(BaseModel):
    """Single categorization result from the LLM."""

    idx: int = Field(..., ge=0, description="Index matching the input transaction")
    category: str = Field(..., min_length=1, description="Assigned category")
    rationale: str = Field("", description="Why the category was chosen")


class BudgetMatchResult(BaseModel):
    """Single budget filter verdict from the LLM."""

    idx: int = Field(..., ge=0, description="Index matching the input transaction")
    matches: bool = Field(..., description="Whether the transaction fits the budget")
    reason: str = Field("", description="Observability-only explanation")


@dataclass(frozen=True)
class CategorizedTransaction:
    txn: ClassifiableTransaction
    category: str
    rationale: str


@dataclass(frozen=True)
class BudgetMatch:
    transaction_id: str
    matches: bool
    reason: str
