"""Cron jobs that sync every user's connections for one Plaid environment."""

from __future__ import annotations

from dataclasses import dataclass

import loguru
from loguru import logger

from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import AccountConnection
from finwire.core.config import FinwireConfig, PlaidEnv
from finwire.errors import ConnectionSyncError, JobConfigurationError
from finwire.jobs.batch_sync.service import BatchResult, UserBatchSyncService
from finwire.services.sync.account_sync import AccountSyncEngine


@dataclass(frozen=True)
class SyncJob:
    name: str
    description: str
    environment: PlaidEnv
    hint: str = ""

    def check_environment(self, config: FinwireConfig) -> None:
        if config.plaid_env != self.environment:
            message = (
                f"Job {self.name} requires PLAID_ENV={self.environment}, "
                f"got {config.plaid_env}."
            )
            raise JobConfigurationError(f"{message} {self.hint}".strip())

    async def run(
        self,
        *,
        config: FinwireConfig,
        db: DB,
        engine: AccountSyncEngine,
        parallel: bool = False,
        logger_instance: loguru.Logger = logger,
    ) -> BatchResult:
        """Sync all of this job's connections and return the run summary.

        Raises:
            JobConfigurationError: if the process runs against another
                Plaid environment.
        """
        self.check_environment(config)
        logger_instance.bind(job=self.name, environment=self.environment).info(
            "Starting job {}", self.name
        )
        service = UserBatchSyncService(
            db, config.ignored_user_ids, logger_instance=logger_instance
        )

        async def sync_connection(user_id: str, connection: AccountConnection) -> None:
            result = await engine.sync_connection(connection)
            if result.failed_accounts:
                raise ConnectionSyncError(connection.item_id, result.failed_accounts)
            if result.error:
                raise ConnectionSyncError(
                    connection.item_id, {}, reason=result.error
                )

        return await service.sync_all_users(
            sync_connection, environment=self.environment, parallel=parallel
        )


PLAID_SYNC_JOB = SyncJob(
    name="plaid-sync",
    description="Sync transactions and balances for all production connections",
    environment="production",
    hint="Use plaid-sync-sandbox for testing.",
)

PLAID_SYNC_SANDBOX_JOB = SyncJob(
    name="plaid-sync-sandbox",
    description="Sync transactions and balances for all sandbox connections",
    environment="sandbox",
)

JOBS: dict[str, SyncJob] = {
    job.name: job for job in (PLAID_SYNC_JOB, PLAID_SYNC_SANDBOX_JOB)
}


def get_job(name: str) -> SyncJob:
    try:
        return JOBS[name]
    except KeyError as e:
        known = ", ".join(sorted(JOBS))
        raise JobConfigurationError(f"Unknown job {name!r}. Available: {known}") from e
