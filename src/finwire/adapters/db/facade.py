from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, delete, or_, select
from sqlalchemy.orm import Session, sessionmaker

from finwire.adapters.db.models import (
    Account,
    AccountConnection,
    AccountSyncState,
    ApplyPageOutcome,
    Base,
    Budget,
    CategorizationRules,
    Transaction,
    TransactionBudget,
    TransactionFilters,
)

if TYPE_CHECKING:
    from finwire.adapters.clients.plaid import PlaidAccount, PlaidTransaction


# Columns a sync delta may overwrite. Category and budget fields are owned by
# the enrichment passes and survive re-delivery of the same transaction.
_SYNC_OWNED_FIELDS = (
    "account_id",
    "item_id",
    "user_id",
    "posted_at",
    "name",
    "merchant_name",
    "amount",
    "currency",
    "pending",
    "plaid_category",
    "account_name",
)


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class DB:
    """Database service layer providing ORM models and helper methods."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///finwire.db")
        """
        self._url = url
        self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(
            bind=self._engine, class_=Session, expire_on_commit=False
        )

    @property
    def url(self) -> str:
        return self._url

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Connections ---------------------------------------------------------

    def upsert_connection(
        self,
        *,
        item_id: str,
        user_id: str,
        access_token: str,
        environment: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
    ) -> AccountConnection:
        with self.session() as session:  # type: Session
            connection = session.get(AccountConnection, item_id)
            if connection is None:
                connection = AccountConnection(item_id=item_id)
                session.add(connection)
            connection.user_id = user_id
            connection.access_token = access_token
            connection.environment = environment
            connection.institution_id = institution_id
            connection.institution_name = institution_name
            connection.updated_at = _utcnow()
            session.flush()
            session.expunge(connection)
            return connection

    def get_connection(self, item_id: str) -> AccountConnection | None:
        with self.session() as session:  # type: Session
            connection = session.get(AccountConnection, item_id)
            if connection:
                session.expunge(connection)
            return connection

    def list_connections_for_user(
        self, user_id: str, *, environment: str | None = None
    ) -> list[AccountConnection]:
        with self.session() as session:  # type: Session
            stmt = select(AccountConnection).where(AccountConnection.user_id == user_id)
            if environment is not None:
                stmt = stmt.where(AccountConnection.environment == environment)
            connections = list(
                session.scalars(stmt.order_by(AccountConnection.created_at))
            )
            for connection in connections:
                session.expunge(connection)
            return connections

    def list_user_ids_with_connections(
        self, *, environment: str | None = None
    ) -> list[str]:
        """Return distinct user ids owning at least one connection."""
        with self.session() as session:  # type: Session
            stmt = select(AccountConnection.user_id).distinct()
            if environment is not None:
                stmt = stmt.where(AccountConnection.environment == environment)
            return sorted(session.scalars(stmt))

    def delete_connection(self, item_id: str) -> bool:
        """Delete a connection with its accounts, sync state and transactions."""
        with self.session() as session:  # type: Session
            connection = session.get(AccountConnection, item_id)
            if connection is None:
                return False
            txn_ids = select(Transaction.transaction_id).where(
                Transaction.item_id == item_id
            )
            session.execute(
                delete(TransactionBudget).where(
                    TransactionBudget.transaction_id.in_(txn_ids)
                )
            )
            session.execute(delete(Transaction).where(Transaction.item_id == item_id))
            account_ids = select(Account.account_id).where(Account.item_id == item_id)
            session.execute(
                delete(AccountSyncState).where(
                    AccountSyncState.account_id.in_(account_ids)
                )
            )
            session.execute(delete(Account).where(Account.item_id == item_id))
            session.delete(connection)
            return True

    # Accounts ------------------------------------------------------------

    def upsert_accounts(
        self, *, user_id: str, item_id: str, accounts: Iterable[PlaidAccount]
    ) -> list[Account]:
        """Insert or refresh accounts and balances for an item."""
        now = _utcnow()
        with self.session() as session:  # type: Session
            rows: list[Account] = []
            for data in accounts:
                account = session.get(Account, data["account_id"])
                if account is None:
                    account = Account(account_id=data["account_id"])
                    session.add(account)
                account.user_id = user_id
                account.item_id = item_id
                account.name = data["name"]
                account.official_name = data.get("official_name")
                account.type = data.get("type")
                account.subtype = data.get("subtype")
                balances = data.get("balances") or {}
                account.current_balance = balances.get("current")
                account.available_balance = balances.get("available")
                account.limit_amount = balances.get("limit")
                account.currency_code = balances.get("iso_currency_code") or "USD"
                account.last_synced_at = now
                account.updated_at = now
                rows.append(account)
            session.flush()
            for account in rows:
                session.expunge(account)
            return rows

    def list_accounts_for_item(self, item_id: str) -> list[Account]:
        with self.session() as session:  # type: Session
            accounts = list(
                session.scalars(
                    select(Account)
                    .where(Account.item_id == item_id)
                    .order_by(Account.account_id)
                )
            )
            for account in accounts:
                session.expunge(account)
            return accounts

    # Transactions --------------------------------------------------------

    def upsert_transactions(
        self,
        txns: Iterable[PlaidTransaction],
        *,
        user_id: str,
        item_id: str | None,
        account_name: str | None = None,
    ) -> int:
        """Insert or update transactions keyed by external id.

        Re-applying the same delta leaves exactly one row per external id.
        Category and budget fields of existing rows are preserved.
        """
        with self.session() as session:  # type: Session
            return self._upsert_transactions(
                session,
                txns,
                user_id=user_id,
                item_id=item_id,
                account_name=account_name,
            )

    def delete_transactions_by_external_ids(self, external_ids: list[str]) -> int:
        """Hard-delete transactions. Unknown ids are ignored."""
        if not external_ids:
            return 0
        with self.session() as session:  # type: Session
            return self._delete_transactions(session, external_ids)

    def apply_sync_page(
        self,
        *,
        account_id: str,
        user_id: str,
        item_id: str | None,
        account_name: str | None,
        upserts: list[PlaidTransaction],
        removed_ids: list[str],
        next_cursor: str,
    ) -> ApplyPageOutcome:
        """Apply one sync page and advance the cursor in a single commit.

        If anything fails the whole page rolls back, so the stored cursor
        never moves past a page whose effects are not durable.
        """
        with self.session() as session:  # type: Session
            deleted = self._delete_transactions(session, removed_ids)
            upserted = self._upsert_transactions(
                session,
                upserts,
                user_id=user_id,
                item_id=item_id,
                account_name=account_name,
            )
            state = session.get(AccountSyncState, account_id)
            if state is None:
                state = AccountSyncState(
                    account_id=account_id, total_transactions_synced=0
                )
                session.add(state)
            state.transaction_cursor = next_cursor
            state.sync_status = "in_progress"
            state.total_transactions_synced = (
                state.total_transactions_synced or 0
            ) + len(upserts)
            state.updated_at = _utcnow()
            return ApplyPageOutcome(
                upserted=upserted, deleted=deleted, cursor=next_cursor
            )

    def _upsert_transactions(
        self,
        session: Session,
        txns: Iterable[PlaidTransaction],
        *,
        user_id: str,
        item_id: str | None,
        account_name: str | None,
    ) -> int:
        now = _utcnow()
        count = 0
        for txn in txns:
            external_id = txn.get("transaction_id")
            if not external_id:
                continue
            values = _transaction_values(
                txn, user_id=user_id, item_id=item_id, account_name=account_name
            )
            row = session.scalars(
                select(Transaction).where(Transaction.external_id == external_id)
            ).first()
            if row is None:
                row = Transaction(external_id=external_id)
                session.add(row)
            for field_name in _SYNC_OWNED_FIELDS:
                setattr(row, field_name, values[field_name])
            row.updated_at = now
            # Flush so duplicates within one page resolve to the same row.
            session.flush()
            count += 1
        return count

    def _delete_transactions(self, session: Session, external_ids: list[str]) -> int:
        if not external_ids:
            return 0
        txn_ids = select(Transaction.transaction_id).where(
            Transaction.external_id.in_(external_ids)
        )
        session.execute(
            delete(TransactionBudget).where(
                TransactionBudget.transaction_id.in_(txn_ids)
            )
        )
        result = session.execute(
            delete(Transaction).where(Transaction.external_id.in_(external_ids))
        )
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    def get_transactions_by_external_ids(
        self, external_ids: list[str]
    ) -> list[Transaction]:
        """Fetch transactions in first-seen input order; unknown ids are skipped."""
        if not external_ids:
            return []
        with self.session() as session:  # type: Session
            rows = list(
                session.scalars(
                    select(Transaction).where(Transaction.external_id.in_(external_ids))
                )
            )
            for row in rows:
                session.expunge(row)
            by_id = {row.external_id: row for row in rows}
            return [by_id[ext] for ext in dict.fromkeys(external_ids) if ext in by_id]

    def find_transactions(
        self, user_id: str, filters: TransactionFilters | None = None
    ) -> list[Transaction]:
        """Return a user's transactions, newest first, with optional filters."""
        filters = filters or TransactionFilters()
        with self.session() as session:  # type: Session
            stmt = select(Transaction).where(Transaction.user_id == user_id)
            if filters.start_date is not None:
                stmt = stmt.where(Transaction.posted_at >= filters.start_date)
            if filters.end_date is not None:
                stmt = stmt.where(Transaction.posted_at <= filters.end_date)
            if filters.account_ids:
                stmt = stmt.where(Transaction.account_id.in_(filters.account_ids))
            if filters.categories:
                stmt = stmt.where(
                    or_(
                        *[
                            Transaction.custom_category.ilike(f"%{category}%")
                            for category in filters.categories
                        ]
                    )
                )
            if filters.budget_id is not None:
                stmt = stmt.join(
                    TransactionBudget,
                    TransactionBudget.transaction_id == Transaction.transaction_id,
                ).where(TransactionBudget.budget_id == filters.budget_id)
            if filters.pending_only:
                stmt = stmt.where(Transaction.pending.is_(True))
            elif filters.exclude_pending:
                stmt = stmt.where(Transaction.pending.is_(False))
            stmt = stmt.order_by(
                Transaction.posted_at.desc(), Transaction.transaction_id.desc()
            )
            rows = list(session.scalars(stmt))
            for row in rows:
                session.expunge(row)
            return rows

    def find_uncategorized_transactions(self, user_id: str) -> list[Transaction]:
        with self.session() as session:  # type: Session
            rows = list(
                session.scalars(
                    select(Transaction)
                    .where(
                        Transaction.user_id == user_id,
                        Transaction.custom_category.is_(None),
                    )
                    .order_by(Transaction.posted_at.desc())
                )
            )
            for row in rows:
                session.expunge(row)
            return rows

    def update_transaction_categories(self, updates: Mapping[str, str]) -> int:
        """Set custom_category by external id; identity fields are untouched."""
        if not updates:
            return 0
        now = _utcnow()
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(Transaction).where(Transaction.external_id.in_(list(updates)))
            )
            count = 0
            for row in rows:
                row.custom_category = updates[row.external_id]
                row.categorized_at = now
                count += 1
            return count

    # Budget membership ---------------------------------------------------

    def get_budget_memberships(self, external_ids: list[str]) -> dict[str, set[str]]:
        """Return external id -> budget ids for the given transactions."""
        if not external_ids:
            return {}
        with self.session() as session:  # type: Session
            memberships: dict[str, set[str]] = {ext: set() for ext in external_ids}
            rows = session.execute(
                select(Transaction.external_id, TransactionBudget.budget_id)
                .join(
                    TransactionBudget,
                    TransactionBudget.transaction_id == Transaction.transaction_id,
                )
                .where(Transaction.external_id.in_(external_ids))
            )
            for external_id, budget_id in rows:
                memberships[external_id].add(budget_id)
            return memberships

    def set_budget_memberships(self, updates: Mapping[str, Iterable[str]]) -> int:
        """Replace the budget membership set of each transaction.

        An empty iterable clears the transaction's memberships.
        """
        if not updates:
            return 0
        now = _utcnow()
        with self.session() as session:  # type: Session
            rows = list(
                session.scalars(
                    select(Transaction).where(
                        Transaction.external_id.in_(list(updates))
                    )
                )
            )
            for row in rows:
                session.execute(
                    delete(TransactionBudget).where(
                        TransactionBudget.transaction_id == row.transaction_id
                    )
                )
                for budget_id in sorted(set(updates[row.external_id])):
                    session.add(
                        TransactionBudget(
                            transaction_id=row.transaction_id, budget_id=budget_id
                        )
                    )
                row.budgets_updated_at = now
            return len(rows)

    # Budgets -------------------------------------------------------------

    def create_budget(
        self,
        *,
        budget_id: str,
        user_id: str,
        title: str,
        filter_prompt: str,
        budget_amount: float,
        time_period: str,
        custom_period_days: int | None = None,
        fixed_period_start_date: date | None = None,
    ) -> Budget:
        with self.session() as session:  # type: Session
            budget = Budget(
                budget_id=budget_id,
                user_id=user_id,
                title=title,
                filter_prompt=filter_prompt,
                budget_amount=budget_amount,
                time_period=time_period,
                custom_period_days=custom_period_days,
                fixed_period_start_date=fixed_period_start_date,
                processing_status="pending",
            )
            session.add(budget)
            session.flush()
            session.refresh(budget)
            session.expunge(budget)
            return budget

    def get_budget(self, user_id: str, budget_id: str) -> Budget | None:
        with self.session() as session:  # type: Session
            budget = session.scalars(
                select(Budget).where(
                    Budget.user_id == user_id, Budget.budget_id == budget_id
                )
            ).first()
            if budget:
                session.expunge(budget)
            return budget

    def list_budgets(self, user_id: str) -> list[Budget]:
        with self.session() as session:  # type: Session
            budgets = list(
                session.scalars(
                    select(Budget)
                    .where(Budget.user_id == user_id)
                    .order_by(Budget.updated_at.desc(), Budget.budget_id)
                )
            )
            for budget in budgets:
                session.expunge(budget)
            return budgets

    def delete_budget(self, user_id: str, budget_id: str) -> bool:
        """Delete a budget; its transactions stay, only memberships are removed."""
        with self.session() as session:  # type: Session
            budget = session.scalars(
                select(Budget).where(
                    Budget.user_id == user_id, Budget.budget_id == budget_id
                )
            ).first()
            if budget is None:
                return False
            session.execute(
                delete(TransactionBudget).where(
                    TransactionBudget.budget_id == budget_id
                )
            )
            session.delete(budget)
            return True

    def set_budget_status(
        self, budget_id: str, status: str, *, error: str | None = None
    ) -> None:
        with self.session() as session:  # type: Session
            budget = session.get(Budget, budget_id)
            if budget is None:
                raise ValueError(f"Budget {budget_id!r} not found")
            budget.processing_status = status
            budget.processing_error = error
            budget.updated_at = _utcnow()

    # Categorization rules ------------------------------------------------

    def get_custom_rules(self, user_id: str) -> str | None:
        with self.session() as session:  # type: Session
            rules = session.get(CategorizationRules, user_id)
            return rules.custom_rules if rules else None

    def save_custom_rules(self, user_id: str, custom_rules: str) -> None:
        with self.session() as session:  # type: Session
            rules = session.get(CategorizationRules, user_id)
            if rules is None:
                rules = CategorizationRules(user_id=user_id)
                session.add(rules)
            rules.custom_rules = custom_rules
            rules.updated_at = _utcnow()


def _transaction_values(
    txn: PlaidTransaction,
    *,
    user_id: str,
    item_id: str | None,
    account_name: str | None,
) -> dict[str, Any]:
    pfc = txn.get("personal_finance_category") or {}
    return {
        "account_id": txn["account_id"],
        "item_id": item_id,
        "user_id": user_id,
        "posted_at": date.fromisoformat(txn["date"]),
        "name": txn["name"],
        "merchant_name": txn.get("merchant_name"),
        "amount": float(txn["amount"]),
        "currency": txn.get("iso_currency_code") or "USD",
        "pending": bool(txn.get("pending", False)),
        "plaid_category": pfc.get("primary") if isinstance(pfc, dict) else None,
        "account_name": account_name,
    }
