from __future__ import annotations

import asyncio

import loguru
from loguru import logger

from finwire.adapters.clients.plaid import PlaidClient
from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import AccountConnection
from finwire.errors import PlaidClientError
from finwire.services.background import BackgroundTaskRunner
from finwire.services.sync.account_sync import AccountSyncEngine, ConnectionSyncResult


class ConnectionLogger:
    """Handles all logging for ConnectionService."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def registered(self, user_id: str, item_id: str) -> None:
        self._logger.bind(user_id=user_id, item_id=item_id).info(
            "Registered connection {} for user {}", item_id, user_id
        )

    def sync_scheduled(self, user_id: str, item_ids: list[str]) -> None:
        self._logger.bind(user_id=user_id, connections=len(item_ids)).info(
            "Scheduled background sync of {} connections for user {}",
            len(item_ids),
            user_id,
        )

    def remove_item_failed(self, item_id: str, error: Exception) -> None:
        self._logger.bind(item_id=item_id).warning(
            "Plaid item removal failed for {}, deleting local data anyway: {}",
            item_id,
            error,
        )

    def disconnected(self, user_id: str, item_id: str) -> None:
        self._logger.bind(user_id=user_id, item_id=item_id).info(
            "Disconnected connection {} for user {}", item_id, user_id
        )


class ConnectionService:
    """Links, syncs and unlinks a user's account connections."""

    def __init__(
        self,
        db: DB,
        plaid_client: PlaidClient,
        engine: AccountSyncEngine,
        *,
        runner: BackgroundTaskRunner | None = None,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._db = db
        self._plaid = plaid_client
        self._engine = engine
        self._runner = runner or BackgroundTaskRunner(logger_instance)
        self._logger = ConnectionLogger(logger_instance)

    @property
    def runner(self) -> BackgroundTaskRunner:
        return self._runner

    async def register(
        self,
        *,
        user_id: str,
        item_id: str,
        access_token: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
    ) -> AccountConnection:
        """Store a freshly linked connection and start its initial backfill."""
        connection = self._db.upsert_connection(
            item_id=item_id,
            user_id=user_id,
            access_token=access_token,
            environment=self._plaid.env,
            institution_id=institution_id,
            institution_name=institution_name,
        )
        self._logger.registered(user_id, item_id)
        self._runner.submit(
            f"initial-sync:{item_id}", self._engine.sync_connection(connection)
        )
        return connection

    async def sync_user(self, user_id: str) -> list[ConnectionSyncResult]:
        """Sync every connection of a user now, one after another."""
        return [
            await self._engine.sync_connection(connection)
            for connection in self._db.list_connections_for_user(user_id)
        ]

    def schedule_user_sync(self, user_id: str) -> list[str]:
        """Start a background sync per connection. Returns the item ids."""
        connections = self._db.list_connections_for_user(user_id)
        for connection in connections:
            self._runner.submit(
                f"sync:{connection.item_id}", self._engine.sync_connection(connection)
            )
        item_ids = [connection.item_id for connection in connections]
        if item_ids:
            self._logger.sync_scheduled(user_id, item_ids)
        return item_ids

    async def disconnect(self, user_id: str, item_id: str) -> bool:
        """Revoke the upstream item and delete the connection and its data.

        Returns False if the user owns no such connection.
        """
        connection = self._db.get_connection(item_id)
        if connection is None or connection.user_id != user_id:
            return False
        try:
            await asyncio.to_thread(self._plaid.remove_item, connection.access_token)
        except PlaidClientError as e:
            self._logger.remove_item_failed(item_id, e)
        deleted = self._db.delete_connection(item_id)
        if deleted:
            self._logger.disconnected(user_id, item_id)
        return deleted
