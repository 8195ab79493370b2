from __future__ import annotations

import asyncio

from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import AccountConnection
from finwire.jobs.batch_sync.service import BatchError, UserBatchSyncService
from tests.fixtures.fakes import seed_connection


def seed_users(db: DB, environment: str = "sandbox") -> None:
    for n in (1, 2, 3):
        seed_connection(
            db, user_id=f"user_{n}", item_id=f"item_{n}", environment=environment
        )


def test_failing_user_is_counted_and_others_continue(db: DB) -> None:
    # input
    seed_users(db)
    synced: list[str] = []

    async def sync_fn(user_id: str, connection: AccountConnection) -> None:
        if user_id == "user_2":
            raise RuntimeError("ITEM_LOGIN_REQUIRED")
        synced.append(connection.item_id)

    # act
    result = asyncio.run(UserBatchSyncService(db).sync_all_users(sync_fn))

    # assert
    assert result.total_items == 3
    assert result.successful_items == 2
    assert result.failed_items == 1
    assert result.errors == [
        BatchError(context="user_2", error="ITEM_LOGIN_REQUIRED")
    ]
    assert synced == ["item_1", "item_3"]
    assert result.duration_seconds >= 0


def test_parallel_run_has_same_summary(db: DB) -> None:
    seed_users(db)

    async def sync_fn(user_id: str, connection: AccountConnection) -> None:
        await asyncio.sleep(0)
        if user_id == "user_2":
            raise RuntimeError("boom")

    result = asyncio.run(
        UserBatchSyncService(db).sync_all_users(sync_fn, parallel=True)
    )

    assert (result.total_items, result.successful_items, result.failed_items) == (
        3,
        2,
        1,
    )


def test_ignored_users_are_never_synced(db: DB) -> None:
    seed_users(db)
    synced: list[str] = []

    async def sync_fn(user_id: str, connection: AccountConnection) -> None:
        synced.append(user_id)

    result = asyncio.run(
        UserBatchSyncService(db, {"user_1", "user_3"}).sync_all_users(sync_fn)
    )

    assert synced == ["user_2"]
    assert result.total_items == 1


def test_environment_filter_limits_users_and_connections(db: DB) -> None:
    # input
    seed_users(db, environment="sandbox")
    seed_connection(db, user_id="user_1", item_id="item_prod", environment="production")
    synced: list[str] = []

    async def sync_fn(user_id: str, connection: AccountConnection) -> None:
        synced.append(connection.item_id)

    # act
    result = asyncio.run(
        UserBatchSyncService(db).sync_all_users(sync_fn, environment="production")
    )

    # assert
    assert synced == ["item_prod"]
    assert result.total_items == 1


def test_no_users_returns_empty_result(db: DB) -> None:
    async def sync_fn(user_id: str, connection: AccountConnection) -> None:
        raise AssertionError("should not be called")

    result = asyncio.run(UserBatchSyncService(db).sync_all_users(sync_fn))

    assert result.to_dict() == {
        "total_items": 0,
        "successful_items": 0,
        "failed_items": 0,
        "duration_seconds": 0.0,
        "errors": [],
    }


def test_to_dict_serializes_errors(db: DB) -> None:
    seed_users(db)

    async def sync_fn(user_id: str, connection: AccountConnection) -> None:
        raise ValueError(f"bad {user_id}")

    result = asyncio.run(UserBatchSyncService(db).sync_all_users(sync_fn))

    assert result.to_dict()["errors"][0] == {"context": "user_1", "error": "bad user_1"}
