"""Fan-out of per-connection sync work across every user."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import asdict, dataclass, field
import time
from typing import Any

import loguru
from loguru import logger

from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import AccountConnection

SyncFn = Callable[[str, AccountConnection], Awaitable[Any]]


@dataclass(frozen=True)
class BatchError:
    context: str
    error: str


@dataclass
class BatchResult:
    """End-of-run summary of a batch operation."""

    total_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    duration_seconds: float = 0.0
    errors: list[BatchError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class _UserOutcome:
    user_id: str
    success: bool
    error: str | None = None


class BatchSyncLogger:
    """Handles all logging for UserBatchSyncService."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance.bind(scope="batch-sync")

    def environment_filter(self, environment: str) -> None:
        self._logger.bind(environment=environment).info(
            "Filtering connections by environment {}", environment
        )

    def ignored_users(self, count: int) -> None:
        self._logger.bind(ignored=count).info("Skipping {} ignored users", count)

    def no_users(self, environment: str | None) -> None:
        where = f"{environment} connections" if environment else "connections"
        self._logger.warning("No users found with {}", where)

    def batch_start(self, total: int, parallel: bool) -> None:
        self._logger.bind(total_items=total, parallel=parallel).info(
            "Syncing {} users{}", total, " in parallel" if parallel else ""
        )

    def user_start(self, user_id: str, connection_count: int) -> None:
        self._logger.bind(user_id=user_id, connections=connection_count).info(
            "Syncing {} connections for user {}", connection_count, user_id
        )

    def user_no_connections(self, user_id: str) -> None:
        self._logger.bind(user_id=user_id).warning(
            "User {} has no connections", user_id
        )

    def connection_complete(self, user_id: str, item_id: str) -> None:
        self._logger.bind(user_id=user_id, item_id=item_id).info(
            "Connection {} synced for user {}", item_id, user_id
        )

    def user_failed(self, user_id: str, item_id: str | None, error: Exception) -> None:
        self._logger.bind(user_id=user_id, item_id=item_id).error(
            "Sync failed for user {} (connection {}): {}", user_id, item_id, error
        )

    def summary(self, result: BatchResult) -> None:
        bound = self._logger.bind(
            total_items=result.total_items,
            successful_items=result.successful_items,
            failed_items=result.failed_items,
            duration_seconds=result.duration_seconds,
            errors=[asdict(err) for err in result.errors],
        )
        message = "Batch sync finished: {}/{} users succeeded, {} failed in {}s"
        args = (
            result.successful_items,
            result.total_items,
            result.failed_items,
            result.duration_seconds,
        )
        if result.failed_items:
            bound.warning(message, *args)
        else:
            bound.info(message, *args)


class UserBatchSyncService:
    """
    Runs a sync function for every connection of every user.

    A failing user is logged, counted and skipped; the remaining users are
    still processed. Users in ``ignored_user_ids`` are never synced.
    """

    def __init__(
        self,
        db: DB,
        ignored_user_ids: Iterable[str] = frozenset(),
        *,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._db = db
        self._ignored_user_ids = frozenset(ignored_user_ids)
        self._logger = BatchSyncLogger(logger_instance)

    def user_ids(self, *, environment: str | None = None) -> list[str]:
        """Distinct users with at least one connection, minus ignored users."""
        user_ids = self._db.list_user_ids_with_connections(environment=environment)
        kept = [uid for uid in user_ids if uid not in self._ignored_user_ids]
        if len(kept) != len(user_ids):
            self._logger.ignored_users(len(user_ids) - len(kept))
        return kept

    async def sync_all_users(
        self,
        sync_fn: SyncFn,
        *,
        environment: str | None = None,
        parallel: bool = False,
    ) -> BatchResult:
        start = time.monotonic()
        if environment:
            self._logger.environment_filter(environment)

        user_ids = self.user_ids(environment=environment)
        if not user_ids:
            self._logger.no_users(environment)
            return BatchResult()

        self._logger.batch_start(len(user_ids), parallel)
        if parallel:
            outcomes = list(
                await asyncio.gather(
                    *(
                        self._sync_user(uid, sync_fn, environment=environment)
                        for uid in user_ids
                    )
                )
            )
        else:
            outcomes = [
                await self._sync_user(uid, sync_fn, environment=environment)
                for uid in user_ids
            ]

        result = BatchResult(total_items=len(user_ids))
        for outcome in outcomes:
            if outcome.success:
                result.successful_items += 1
            else:
                result.failed_items += 1
                result.errors.append(
                    BatchError(context=outcome.user_id, error=outcome.error or "")
                )
        result.duration_seconds = round(time.monotonic() - start, 2)
        self._logger.summary(result)
        return result

    async def _sync_user(
        self, user_id: str, sync_fn: SyncFn, *, environment: str | None
    ) -> _UserOutcome:
        item_id: str | None = None
        try:
            connections = self._db.list_connections_for_user(
                user_id, environment=environment
            )
            if not connections:
                self._logger.user_no_connections(user_id)
                return _UserOutcome(user_id=user_id, success=True)

            self._logger.user_start(user_id, len(connections))
            for connection in connections:
                item_id = connection.item_id
                await sync_fn(user_id, connection)
                self._logger.connection_complete(user_id, item_id)
        except Exception as e:
            self._logger.user_failed(user_id, item_id, e)
            return _UserOutcome(user_id=user_id, success=False, error=str(e) or repr(e))
        return _UserOutcome(user_id=user_id, success=True)
