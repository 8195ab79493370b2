from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import loguru
from loguru import logger

from finwire.adapters.clients.plaid import (
    MAX_SYNC_PAGE_SIZE,
    PlaidClient,
    PlaidTransaction,
)
from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import AccountConnection
from finwire.errors import SyncError
from finwire.services.sync.sync_state import SyncStateStore

if TYPE_CHECKING:
    from finwire.services.budgets.labeling import BudgetLabeler
    from finwire.services.classification.categorizer import TransactionCategorizer


@dataclass
class AccountSyncResult:
    """Outcome of syncing one account to the end of its delta stream."""

    account_id: str
    pages: int = 0
    added: list[PlaidTransaction] = field(default_factory=list)
    modified: list[PlaidTransaction] = field(default_factory=list)
    removed_count: int = 0
    cursor: str | None = None

    @property
    def transactions_synced(self) -> int:
        return len(self.added) + len(self.modified)


@dataclass
class ConnectionSyncResult:
    """Outcome of syncing every account under one connection."""

    item_id: str
    accounts_touched: int = 0
    transactions_synced: int = 0
    error: str | None = None
    refresh_error: str | None = None
    failed_accounts: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed_accounts


class AccountSyncLogger:
    """Handles all logging for AccountSyncEngine with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def connection_start(self, item_id: str, user_id: str) -> None:
        self._logger.bind(item_id=item_id, user_id=user_id).info(
            "Starting sync for connection {}", item_id
        )

    def accounts_refreshed(self, item_id: str, count: int) -> None:
        self._logger.bind(item_id=item_id, accounts=count).info(
            "Refreshed {} accounts and balances for connection {}", count, item_id
        )

    def accounts_refresh_failed(
        self, item_id: str, error: Exception, stored_count: int
    ) -> None:
        self._logger.bind(item_id=item_id, accounts=stored_count).warning(
            "Account refresh failed for connection {}, syncing {} stored accounts: {}",
            item_id,
            stored_count,
            error,
        )

    def account_start(self, account_id: str, cursor: str | None) -> None:
        cursor_label = f"{cursor[:20]}..." if cursor else "none (full history)"
        self._logger.bind(account_id=account_id).info(
            "Syncing account {} (cursor: {})", account_id, cursor_label
        )

    def page_applied(
        self,
        account_id: str,
        page_num: int,
        added_count: int,
        modified_count: int,
        removed_count: int,
    ) -> None:
        self._logger.bind(
            account_id=account_id,
            page=page_num,
            added=added_count,
            modified=modified_count,
            removed=removed_count,
        ).info(
            "Account {} page {}: {} added, {} modified, {} removed",
            account_id,
            page_num,
            added_count,
            modified_count,
            removed_count,
        )

    def account_complete(self, result: AccountSyncResult) -> None:
        self._logger.bind(
            account_id=result.account_id,
            pages=result.pages,
            synced=result.transactions_synced,
        ).info(
            "Sync complete for account {}: {} added, {} modified, {} removed "
            "({} pages)",
            result.account_id,
            len(result.added),
            len(result.modified),
            result.removed_count,
            result.pages,
        )

    def account_failed(self, account_id: str, pages: int, error: Exception) -> None:
        self._logger.bind(account_id=account_id, pages=pages).error(
            "Sync failed for account {} after {} committed pages: {}",
            account_id,
            pages,
            error,
        )

    def enrichment_failed(self, step: str, account_id: str, error: Exception) -> None:
        self._logger.bind(account_id=account_id, step=step).warning(
            "{} failed for account {} (non-fatal): {}", step, account_id, error
        )

    def connection_complete(self, result: ConnectionSyncResult) -> None:
        bound = self._logger.bind(
            item_id=result.item_id,
            accounts=result.accounts_touched,
            synced=result.transactions_synced,
            failed=len(result.failed_accounts),
        )
        if result.ok:
            bound.info(
                "Connection {} synced: {} accounts, {} transactions",
                result.item_id,
                result.accounts_touched,
                result.transactions_synced,
            )
        else:
            bound.warning(
                "Connection {} synced with errors: {}", result.item_id, result.error
            )


class AccountSyncEngine:
    """
    Pulls transaction deltas from Plaid one account at a time and applies them
    page by page. Each page's deletes, upserts and cursor advance commit
    together, so a failed sync resumes from the last committed page.
    """

    def __init__(
        self,
        plaid_client: PlaidClient,
        db: DB,
        *,
        sync_state: SyncStateStore | None = None,
        categorizer: TransactionCategorizer | None = None,
        labeler: BudgetLabeler | None = None,
        page_size: int = MAX_SYNC_PAGE_SIZE,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._plaid = plaid_client
        self._db = db
        self._state = sync_state or SyncStateStore(db)
        self._categorizer = categorizer
        self._labeler = labeler
        self._page_size = min(page_size, MAX_SYNC_PAGE_SIZE)
        self._logger = AccountSyncLogger(logger_instance)

    async def sync_connection(
        self, connection: AccountConnection
    ) -> ConnectionSyncResult:
        """Refresh accounts, then sync each one; failures stay per account."""
        result = ConnectionSyncResult(item_id=connection.item_id)
        self._logger.connection_start(connection.item_id, connection.user_id)

        try:
            plaid_accounts = await asyncio.to_thread(
                self._plaid.get_accounts, connection.access_token
            )
            accounts = self._db.upsert_accounts(
                user_id=connection.user_id,
                item_id=connection.item_id,
                accounts=plaid_accounts,
            )
        except Exception as e:
            # Balances go stale, but transactions still sync for known accounts.
            result.refresh_error = f"Failed to refresh accounts: {e}"
            accounts = self._db.list_accounts_for_item(connection.item_id)
            self._logger.accounts_refresh_failed(connection.item_id, e, len(accounts))
            if not accounts:
                result.error = result.refresh_error
                self._logger.connection_complete(result)
                return result
        else:
            self._logger.accounts_refreshed(connection.item_id, len(accounts))

        for account in accounts:
            self._state.ensure(account.account_id)

        for account in accounts:
            try:
                account_result = await self.sync_account(
                    connection, account.account_id, account_name=account.name
                )
            except SyncError as e:
                result.failed_accounts[account.account_id] = str(e)
                continue
            result.accounts_touched += 1
            result.transactions_synced += account_result.transactions_synced

        if result.failed_accounts:
            failed = len(result.failed_accounts)
            result.error = f"{failed} of {len(accounts)} accounts failed to sync"
        self._logger.connection_complete(result)
        return result

    async def sync_account(
        self,
        connection: AccountConnection,
        account_id: str,
        *,
        account_name: str | None = None,
    ) -> AccountSyncResult:
        """Sync one account until the upstream reports no more pages.

        Raises:
            SyncError: if any page fails. The cursor stays at the last page
                whose effects were committed.
        """
        result = AccountSyncResult(account_id=account_id)
        try:
            state = self._state.get(account_id)
            cursor = state.transaction_cursor if state else None
            result.cursor = cursor
            self._logger.account_start(account_id, cursor)
            self._state.mark_in_progress(account_id)

            has_more = True
            while has_more:
                page = await asyncio.to_thread(
                    self._plaid.sync_transactions,
                    connection.access_token,
                    cursor=cursor,
                    count=self._page_size,
                    account_id=account_id,
                )
                outcome = self._db.apply_sync_page(
                    account_id=account_id,
                    user_id=connection.user_id,
                    item_id=connection.item_id,
                    account_name=account_name,
                    upserts=[*page.added, *page.modified],
                    removed_ids=page.removed,
                    next_cursor=page.next_cursor,
                )
                cursor = outcome.cursor
                has_more = page.has_more
                result.pages += 1
                result.cursor = cursor
                result.added.extend(page.added)
                result.modified.extend(page.modified)
                result.removed_count += len(page.removed)
                self._logger.page_applied(
                    account_id,
                    result.pages,
                    len(page.added),
                    len(page.modified),
                    len(page.removed),
                )
        except Exception as e:
            self._logger.account_failed(account_id, result.pages, e)
            self._state.mark_error(account_id, str(e))
            raise SyncError(
                f"Sync failed for account {account_id}: {e}",
                account_id=account_id,
                pages_committed=result.pages,
            ) from e

        self._state.mark_complete(account_id, result.cursor)
        self._logger.account_complete(result)

        await self._enrich(connection.user_id, result)
        return result

    async def _enrich(self, user_id: str, result: AccountSyncResult) -> None:
        """Categorize new transactions and label changed ones against budgets.

        Rows left uncategorized by an earlier failed run are picked up again
        here, since the cursor has already moved past them.
        """
        if self._categorizer is not None:
            try:
                added = self._db.get_transactions_by_external_ids(
                    _unique_ids(result.added)
                )
                pending = {row.external_id: row for row in added}
                for row in self._db.find_uncategorized_transactions(user_id):
                    pending.setdefault(row.external_id, row)
                if pending:
                    await self._categorizer.categorize_stored(
                        list(pending.values()), self._db.get_custom_rules(user_id)
                    )
            except Exception as e:
                self._logger.enrichment_failed("Categorization", result.account_id, e)

        if self._labeler is not None and result.transactions_synced:
            try:
                budgets = self._db.list_budgets(user_id)
                if budgets:
                    rows = self._db.get_transactions_by_external_ids(
                        _unique_ids([*result.added, *result.modified])
                    )
                    await self._labeler.label_for_budgets(rows, budgets)
            except Exception as e:
                self._logger.enrichment_failed("Budget labeling", result.account_id, e)


def _unique_ids(txns: list[PlaidTransaction]) -> list[str]:
    """Transaction ids in first-seen order; a page may re-send an earlier id."""
    return list(dict.fromkeys(txn["transaction_id"] for txn in txns))
