from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select

from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import SYNC_STATUSES, Account, AccountSyncState


@dataclass(frozen=True)
class SyncStateUpdate:
    """Partial update for a sync-state row. ``None`` fields are left as-is."""

    cursor: str | None = None
    status: str | None = None
    error: str | None = None
    count: int | None = None
    clear_error: bool = False


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class SyncStateStore:
    """Key-value access to per-account cursor and status, keyed by account id.

    Callers guarantee a single writer per account.
    """

    def __init__(self, db: DB) -> None:
        self._db = db

    def get(self, account_id: str) -> AccountSyncState | None:
        with self._db.session() as session:
            state = session.get(AccountSyncState, account_id)
            if state:
                session.expunge(state)
            return state

    def upsert(self, account_id: str, update: SyncStateUpdate) -> AccountSyncState:
        if update.status is not None and update.status not in SYNC_STATUSES:
            raise ValueError(f"Unknown sync status: {update.status!r}")

        with self._db.session() as session:
            state = session.get(AccountSyncState, account_id)
            if state is None:
                state = AccountSyncState(
                    account_id=account_id,
                    sync_status="pending",
                    total_transactions_synced=0,
                )
                session.add(state)
            if update.cursor is not None:
                state.transaction_cursor = update.cursor
            if update.status is not None:
                state.sync_status = update.status
            if update.clear_error:
                state.error_message = None
            elif update.error is not None:
                state.error_message = update.error
            if update.count is not None:
                state.total_transactions_synced = update.count
            state.updated_at = _utcnow()
            session.flush()
            session.expunge(state)
            return state

    def ensure(self, account_id: str) -> AccountSyncState:
        """Create a pending row for a new account; existing rows are untouched."""
        return self.get(account_id) or self.upsert(account_id, SyncStateUpdate())

    def mark_in_progress(self, account_id: str) -> AccountSyncState:
        return self.upsert(account_id, SyncStateUpdate(status="in_progress"))

    def mark_complete(self, account_id: str, cursor: str | None) -> AccountSyncState:
        with self._db.session() as session:
            state = session.get(AccountSyncState, account_id)
            if state is None:
                state = AccountSyncState(
                    account_id=account_id, total_transactions_synced=0
                )
                session.add(state)
            if cursor is not None:
                state.transaction_cursor = cursor
            now = _utcnow()
            state.sync_status = "complete"
            state.error_message = None
            state.last_synced_at = now
            state.updated_at = now
            session.flush()
            session.expunge(state)
            return state

    def mark_error(self, account_id: str, message: str) -> AccountSyncState:
        """Record a failure without touching the stored cursor."""
        return self.upsert(account_id, SyncStateUpdate(status="error", error=message))

    def list_for_user(self, user_id: str) -> list[AccountSyncState]:
        with self._db.session() as session:
            states = list(
                session.scalars(
                    select(AccountSyncState)
                    .join(Account, Account.account_id == AccountSyncState.account_id)
                    .where(Account.user_id == user_id)
                    .order_by(AccountSyncState.account_id)
                )
            )
            for state in states:
                session.expunge(state)
            return states
