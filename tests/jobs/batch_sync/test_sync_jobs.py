from __future__ import annotations

import asyncio

import pytest

from finwire.adapters.clients.plaid import SyncPage
from finwire.adapters.db.facade import DB
from finwire.core.config import FinwireConfig
from finwire.errors import JobConfigurationError, PlaidClientError
from finwire.jobs.batch_sync.jobs import (
    JOBS,
    PLAID_SYNC_JOB,
    PLAID_SYNC_SANDBOX_JOB,
    get_job,
)
from finwire.services.sync.account_sync import AccountSyncEngine
from tests.fixtures.fakes import (
    FakePlaidClient,
    make_plaid_account,
    make_plaid_txn,
    seed_connection,
)


def test_registry_lists_both_jobs() -> None:
    assert set(JOBS) == {"plaid-sync", "plaid-sync-sandbox"}
    assert get_job("plaid-sync") is PLAID_SYNC_JOB


def test_unknown_job_raises() -> None:
    with pytest.raises(JobConfigurationError, match="plaid-sync-sandbox"):
        get_job("nightly")


def test_production_job_refuses_sandbox_config() -> None:
    with pytest.raises(JobConfigurationError, match="plaid-sync-sandbox for testing"):
        PLAID_SYNC_JOB.check_environment(FinwireConfig(plaid_env="sandbox"))


def test_sandbox_job_syncs_sandbox_connections(db: DB) -> None:
    # input
    seed_connection(db, user_id="user_1", item_id="item_1")
    seed_connection(db, user_id="user_2", item_id="item_2", environment="production")
    plaid = FakePlaidClient(
        accounts=[make_plaid_account("acc_1")],
        pages={
            "acc_1": [SyncPage(added=[make_plaid_txn("tx_1")], next_cursor="c1")]
        },
    )
    engine = AccountSyncEngine(plaid, db)  # type: ignore[arg-type]

    # act
    result = asyncio.run(
        PLAID_SYNC_SANDBOX_JOB.run(
            config=FinwireConfig(plaid_env="sandbox"), db=db, engine=engine
        )
    )

    # assert
    assert (result.total_items, result.successful_items, result.failed_items) == (
        1,
        1,
        0,
    )
    assert [call["access_token"] for call in plaid.sync_calls] == ["access-item_1"]


def test_failed_accounts_fail_the_user(db: DB) -> None:
    # input
    seed_connection(db)
    plaid = FakePlaidClient(
        accounts=[make_plaid_account("acc_1")],
        pages={"acc_1": [PlaidClientError("ITEM_LOGIN_REQUIRED")]},
    )
    engine = AccountSyncEngine(plaid, db)  # type: ignore[arg-type]

    # act
    result = asyncio.run(
        PLAID_SYNC_SANDBOX_JOB.run(
            config=FinwireConfig(plaid_env="sandbox"), db=db, engine=engine
        )
    )

    # assert
    assert result.failed_items == 1
    (error,) = result.errors
    assert error.context == "user_1"
    assert "Sync failed for item item_1" in error.error
    assert "ITEM_LOGIN_REQUIRED" in error.error


def test_account_refresh_failure_fails_the_user(db: DB) -> None:
    seed_connection(db)
    plaid = FakePlaidClient(accounts_error=PlaidClientError("bad token"))
    engine = AccountSyncEngine(plaid, db)  # type: ignore[arg-type]

    result = asyncio.run(
        PLAID_SYNC_SANDBOX_JOB.run(
            config=FinwireConfig(plaid_env="sandbox"), db=db, engine=engine
        )
    )

    assert result.failed_items == 1
    assert "Failed to refresh accounts: bad token" in result.errors[0].error


def test_ignored_users_come_from_config(db: DB) -> None:
    seed_connection(db, user_id="user_1")
    engine = AccountSyncEngine(FakePlaidClient(), db)  # type: ignore[arg-type]

    result = asyncio.run(
        PLAID_SYNC_SANDBOX_JOB.run(
            config=FinwireConfig(ignored_user_ids=frozenset({"user_1"})),
            db=db,
            engine=engine,
        )
    )

    assert result.total_items == 0
