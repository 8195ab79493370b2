from __future__ import annotations

import pytest

from finwire.adapters.db.facade import DB
from finwire.services.sync.sync_state import SyncStateStore, SyncStateUpdate
from tests.fixtures.fakes import make_plaid_account, seed_connection


def test_ensure_creates_pending_row_once(db: DB) -> None:
    store = SyncStateStore(db)

    created = store.ensure("acc_1")
    store.mark_complete("acc_1", "cursor_1")
    again = store.ensure("acc_1")

    assert created.sync_status == "pending"
    assert created.transaction_cursor is None
    assert again.sync_status == "complete"
    assert again.transaction_cursor == "cursor_1"


def test_mark_error_keeps_cursor(db: DB) -> None:
    # input
    store = SyncStateStore(db)
    store.mark_complete("acc_1", "cursor_1")

    # act
    store.mark_error("acc_1", "upstream down")

    # assert
    state = store.get("acc_1")
    assert state is not None
    assert state.sync_status == "error"
    assert state.error_message == "upstream down"
    assert state.transaction_cursor == "cursor_1"


def test_mark_complete_clears_error(db: DB) -> None:
    store = SyncStateStore(db)
    store.mark_error("acc_1", "boom")

    state = store.mark_complete("acc_1", "cursor_2")

    assert state.sync_status == "complete"
    assert state.error_message is None
    assert state.last_synced_at is not None


def test_upsert_partial_update(db: DB) -> None:
    store = SyncStateStore(db)
    store.upsert("acc_1", SyncStateUpdate(cursor="c1", status="in_progress", count=3))

    state = store.upsert("acc_1", SyncStateUpdate(status="complete"))

    assert state.transaction_cursor == "c1"
    assert state.total_transactions_synced == 3
    assert state.sync_status == "complete"


def test_upsert_rejects_unknown_status(db: DB) -> None:
    with pytest.raises(ValueError, match="sync status"):
        SyncStateStore(db).upsert("acc_1", SyncStateUpdate(status="done"))


def test_list_for_user(db: DB) -> None:
    seed_connection(db)
    db.upsert_accounts(
        user_id="user_1",
        item_id="item_1",
        accounts=[make_plaid_account("acc_2"), make_plaid_account("acc_1")],
    )
    store = SyncStateStore(db)
    store.ensure("acc_1")
    store.ensure("acc_2")
    store.ensure("unowned")

    states = store.list_for_user("user_1")

    assert [state.account_id for state in states] == ["acc_1", "acc_2"]
