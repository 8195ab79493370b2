from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Literal

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    Date,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

SyncStatus = Literal["pending", "in_progress", "complete", "error"]
BudgetStatus = Literal["pending", "processing", "ready", "error"]
BudgetPeriod = Literal[
    "rolling", "weekly", "biweekly", "monthly", "quarterly", "yearly"
]

SYNC_STATUSES: frozenset[str] = frozenset(
    {"pending", "in_progress", "complete", "error"}
)
FIXED_PERIODS: frozenset[str] = frozenset(
    {"weekly", "biweekly", "monthly", "quarterly", "yearly"}
)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class AccountConnection(Base):
    """One authenticated Plaid item linking a user to an institution."""

    __tablename__ = "account_connections"

    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    environment: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'sandbox'")
    )
    institution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    accounts: Mapped[list[Account]] = relationship(
        "Account", back_populates="connection", cascade="all, delete-orphan"
    )


class Account(Base):
    """A financial account under a connection."""

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    item_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("account_connections.item_id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    official_name: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str | None] = mapped_column(String, nullable=True)
    subtype: Mapped[str | None] = mapped_column(String, nullable=True)
    current_balance: Mapped[float | None] = mapped_column(Float, nullable=True)
    available_balance: Mapped[float | None] = mapped_column(Float, nullable=True)
    limit_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency_code: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'USD'")
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    connection: Mapped[AccountConnection] = relationship(
        "AccountConnection", back_populates="accounts"
    )
    sync_state: Mapped[AccountSyncState | None] = relationship(
        "AccountSyncState",
        back_populates="account",
        cascade="all, delete-orphan",
        uselist=False,
    )


class AccountSyncState(Base):
    """Per-account cursor position and sync status."""

    __tablename__ = "account_sync_state"

    account_id: Mapped[str] = mapped_column(
        String, ForeignKey("accounts.account_id", ondelete="CASCADE"), primary_key=True
    )
    # Opaque Plaid cursor; NULL means the next sync is a full historical backfill.
    transaction_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'pending'"), index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_transactions_synced: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    account: Mapped[Account] = relationship("Account", back_populates="sync_state")


class Transaction(Base):
    """Normalized transaction keyed by the Plaid transaction id."""

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_transactions_external_id"),
    )

    transaction_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    external_id: Mapped[str] = mapped_column(String, nullable=False)
    account_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    item_id: Mapped[str | None] = mapped_column(
        String,
        ForeignKey("account_connections.item_id", ondelete="CASCADE"),
        nullable=True,
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    posted_at: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Plaid sign convention: positive is money leaving the account.
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'USD'")
    )
    pending: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    plaid_category: Mapped[str | None] = mapped_column(String, nullable=True)
    account_name: Mapped[str | None] = mapped_column(String, nullable=True)
    custom_category: Mapped[str | None] = mapped_column(String, nullable=True)
    categorized_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    budgets_updated_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    budgets: Mapped[list[Budget]] = relationship(
        "Budget", secondary="transaction_budgets", back_populates="transactions"
    )


class Budget(Base):
    """User-defined budget with a natural-language transaction filter."""

    __tablename__ = "budgets"

    budget_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    filter_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    budget_amount: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    time_period: Mapped[str] = mapped_column(String, nullable=False)
    custom_period_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fixed_period_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    processing_status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'pending'")
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    transactions: Mapped[list[Transaction]] = relationship(
        "Transaction", secondary="transaction_budgets", back_populates="budgets"
    )


class TransactionBudget(Base):
    """Transaction-Budget membership junction table."""

    __tablename__ = "transaction_budgets"

    transaction_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("transactions.transaction_id", ondelete="CASCADE"),
        primary_key=True,
    )
    budget_id: Mapped[str] = mapped_column(
        String, ForeignKey("budgets.budget_id", ondelete="CASCADE"), primary_key=True
    )


class CategorizationRules(Base):
    """Free-text custom categorization rules, one row per user."""

    __tablename__ = "categorization_rules"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    custom_rules: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


@dataclass(frozen=True)
class TransactionFilters:
    start_date: date | None = None
    end_date: date | None = None
    account_ids: list[str] | None = None
    # Case-insensitive substring matches against custom_category, OR'd together.
    categories: list[str] | None = None
    budget_id: str | None = None
    pending_only: bool = False
    exclude_pending: bool = False


@dataclass
class ApplyPageOutcome:
    upserted: int
    deleted: int
    cursor: str
